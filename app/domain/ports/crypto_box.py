# app/domain/ports/crypto_box.py
from abc import ABC, abstractmethod


class CryptoBox(ABC):
    """Puerto para el cifrado del token de KSeF en reposo y el hash de contenido."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, encrypted: str) -> str:
        pass

    @abstractmethod
    def hash(self, data: bytes) -> str:
        """Retorna el hash hexadecimal de `data`."""
        pass
