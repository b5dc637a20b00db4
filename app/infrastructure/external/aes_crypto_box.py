# app/infrastructure/external/aes_crypto_box.py
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import config
from app.domain.exceptions import ConfigurationError
from app.domain.ports.crypto_box import CryptoBox

IV_LENGTH = 12  # IV de 96 bits para GCM


class AesGcmCryptoBox(CryptoBox):
    """
    Cifra el token de KSeF con AES-GCM. El resultado es hex(IV + texto cifrado),
    compatible con los tokens ya guardados en la base de datos.
    """
    def __init__(self, key_hex: Optional[str] = None):
        key_hex = key_hex or config.KSEF_ENCRYPTION_KEY
        if not key_hex:
            raise ConfigurationError("No se ha definido KSEF_ENCRYPTION_KEY en el archivo .env")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigurationError("KSEF_ENCRYPTION_KEY debe estar en hexadecimal") from e
        if len(key) not in (16, 24, 32):
            raise ConfigurationError("KSEF_ENCRYPTION_KEY debe tener 128, 192 o 256 bits")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        encrypted = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return (iv + encrypted).hex()

    def decrypt(self, encrypted: str) -> str:
        try:
            combined = bytes.fromhex(encrypted)
            decrypted = self._aesgcm.decrypt(combined[:IV_LENGTH], combined[IV_LENGTH:], None)
        except (ValueError, InvalidTag) as e:
            raise ConfigurationError("No se pudo descifrar el token de KSeF") from e
        return decrypted.decode("utf-8")

    def hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()
