# app/domain/ports/registry_session_client.py
from abc import ABC, abstractmethod
from typing import Optional

from app.domain.models.ksef_session import Challenge, Session, QueryStatus, SubjectType


class RegistrySessionClient(ABC):
    """
    Puerto para el protocolo de sesión de la API de KSeF.
    Una instancia mantiene como máximo una sesión activa y no se comparte
    entre descargas concurrentes.
    """

    @abstractmethod
    def test_connection(self) -> bool:
        """Comprueba que la API responde. Nunca lanza excepciones."""
        pass

    @abstractmethod
    def get_challenge(self, tax_id: str) -> Challenge:
        pass

    @abstractmethod
    def init_session(self, tax_id: str, credential: str) -> Session:
        """
        Obtiene un desafío y lo intercambia por una sesión.
        La sesión queda guardada en el cliente para las llamadas autenticadas.
        """
        pass

    @abstractmethod
    def start_query(self, subject_type: SubjectType, date_from: Optional[str] = None, date_to: Optional[str] = None) -> str:
        """Lanza una consulta asíncrona y retorna su `queryId`."""
        pass

    @abstractmethod
    def poll_query(self, query_id: str) -> QueryStatus:
        """Una única consulta de estado, sin reintentos."""
        pass

    @abstractmethod
    def download_package(self, query_id: str, part_number: str) -> bytes:
        pass

    @abstractmethod
    def close(self) -> None:
        """Cierra la sesión. Los fallos se registran pero nunca se propagan."""
        pass
