# app/infrastructure/external/ksef_session_client.py
import json
import logging
import time
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import requests
from urllib3.exceptions import ReadTimeoutError

import config
from app.domain.exceptions import ProtocolError, RegistryTimeoutError, StateError
from app.domain.masking import anonymize_for_logs
from app.domain.models.ksef_session import (
    AuthHeaderType, Challenge, PackagePart, QueryStatus, Session, SubjectType,
)
from app.domain.models.tenant_config import TenantConfig
from app.domain.ports.registry_session_client import RegistrySessionClient

logger = logging.getLogger(__name__)

BODY_CHUNK_SIZE = 64 * 1024


class ClientState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CHALLENGE_OBTAINED = "challenge_obtained"
    SESSION_ACTIVE = "session_active"
    SESSION_CLOSED = "session_closed"


class KSeFSessionClient(RegistrySessionClient):
    """
    Adaptador para la API online de KSeF: desafío de autorización, sesión por
    token, consultas asíncronas de facturas y descarga de paquetes ZIP.

    Cada instancia pertenece a una sola descarga. La cabecera de autorización
    es configurable porque el servidor ha cambiado entre revisiones del protocolo.
    """
    def __init__(
        self,
        base_url: str,
        auth_header_type: Union[AuthHeaderType, str] = AuthHeaderType.BEARER,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        download_timeout: float = config.DOWNLOAD_TIMEOUT_SECONDS,
        http_session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_header_type = AuthHeaderType(auth_header_type)
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.http = http_session or requests.Session()
        self.clock = clock
        self.state = ClientState.UNAUTHENTICATED
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    # --- Llamadas públicas del protocolo ---

    def test_connection(self) -> bool:
        try:
            self._request("GET", config.KSEF_ENDPOINTS["session_status"], raw=True)
            return True
        except ProtocolError as e:
            logger.error(f"Fallo la prueba de conexión con KSeF: {e}")
            return False

    def get_challenge(self, tax_id: str) -> Challenge:
        payload = {"context": self._context(tax_id, datetime.now(timezone.utc).isoformat())}
        logger.info(f"Obteniendo desafío de autorización para NIP {anonymize_for_logs(tax_id)}...")

        response = self._request("POST", config.KSEF_ENDPOINTS["authorization_challenge"], payload)
        challenge = self._require_fields(response, "challenge", "timestamp", what="desafío")

        self.state = ClientState.CHALLENGE_OBTAINED
        return Challenge(challenge=str(challenge["challenge"]), timestamp=str(challenge["timestamp"]))

    def init_session(self, tax_id: str, credential: str) -> Session:
        challenge = self.get_challenge(tax_id)
        payload = {
            "context": self._context(tax_id, challenge.timestamp),
            "challenge": challenge.challenge,
            "token": credential,
        }

        logger.info("Inicializando sesión de KSeF...")
        response = self._request("POST", config.KSEF_ENDPOINTS["init_token"], payload)
        data = self._require_fields(response, "sessionId", "sessionToken", what="sesión")

        self._session = Session(session_id=str(data["sessionId"]), session_token=str(data["sessionToken"]))
        self.state = ClientState.SESSION_ACTIVE
        logger.info(f"Sesión de KSeF iniciada: {anonymize_for_logs(self._session.model_dump())}")
        return self._session

    def start_query(
        self,
        subject_type: SubjectType,
        date_from: Optional[Union[str, date]] = None,
        date_to: Optional[Union[str, date]] = None,
    ) -> str:
        session = self._require_session()

        # El sessionId va en el cuerpo: KSeF asocia la consulta a la sesión indicada ahí
        payload: Dict[str, Any] = {
            "sessionId": session.session_id,
            "subjectType": SubjectType(subject_type).value,
        }
        if date_from:
            payload["dateFrom"] = self._format_date(date_from)
        if date_to:
            payload["dateTo"] = self._format_date(date_to)

        logger.info(f"Iniciando consulta de facturas: {anonymize_for_logs(payload)}")
        response = self._request("POST", config.KSEF_ENDPOINTS["invoice_query"], payload, authenticated=True)
        data = self._require_fields(response, "queryId", what="consulta")
        return str(data["queryId"])

    def poll_query(self, query_id: str) -> QueryStatus:
        session = self._require_session()
        endpoint = f"{config.KSEF_ENDPOINTS['invoice_query']}/{session.session_id}/{query_id}"

        response = self._request("GET", endpoint, authenticated=True)
        if not isinstance(response, dict):
            raise ProtocolError("Respuesta de estado de consulta inválida de KSeF")

        raw_items = response.get("items") or []
        if not isinstance(raw_items, list) or not all(isinstance(item, dict) for item in raw_items):
            raise ProtocolError("Respuesta de estado de consulta inválida de KSeF: 'items' mal formado")

        try:
            items = [
                PackagePart(part_number=str(item["partNumber"]), size=int(item.get("size") or 0))
                for item in raw_items
                if item.get("partNumber") is not None
            ]
            total_items = int(response.get("totalItems") or 0)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Respuesta de estado de consulta inválida de KSeF: {e}") from e

        return QueryStatus(
            query_id=query_id,
            items=items,
            has_more=bool(response.get("hasMore") or False),
            total_items=total_items,
        )

    def download_package(self, query_id: str, part_number: str) -> bytes:
        session = self._require_session()
        endpoint = f"{config.KSEF_ENDPOINTS['invoice_query']}/{session.session_id}/{query_id}/{part_number}"

        logger.info(f"Descargando paquete {part_number}...")
        return self._request("GET", endpoint, authenticated=True, raw=True, timeout=self.download_timeout)

    def close(self) -> None:
        if self._session is None:
            self.state = ClientState.SESSION_CLOSED
            return

        try:
            endpoint = f"{config.KSEF_ENDPOINTS['session_close']}/{self._session.session_id}"
            self._request("POST", endpoint, authenticated=True, raw=True)
            logger.info("Sesión de KSeF cerrada correctamente.")
        except Exception as e:
            # Un fallo al cerrar nunca debe ocultar el resultado de la descarga
            logger.warning(f"No se pudo cerrar la sesión de KSeF: {e}")
        finally:
            self._session = None
            self.state = ClientState.SESSION_CLOSED

    # --- Auxiliares ---

    def _context(self, tax_id: str, timestamp: str) -> Dict[str, str]:
        return {"identifier": tax_id, "identifierType": "onip", "timestamp": timestamp}

    def _require_session(self) -> Session:
        if self._session is None or self.state != ClientState.SESSION_ACTIVE:
            raise StateError("No hay sesión activa: llame primero a init_session")
        return self._session

    def _auth_headers(self) -> Dict[str, str]:
        session = self._require_session()
        if self.auth_header_type == AuthHeaderType.BEARER:
            return {"Authorization": f"Bearer {session.session_token}"}
        return {"Session-Token": session.session_token}

    @staticmethod
    def _format_date(value: Union[str, date]) -> str:
        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")
        return value

    @staticmethod
    def _require_fields(response: Any, *fields: str, what: str) -> Dict[str, Any]:
        if not isinstance(response, dict) or any(not response.get(field) for field in fields):
            raise ProtocolError(f"Respuesta de {what} inválida de KSeF: faltan {', '.join(fields)}")
        return response

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
        raw: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Envía la petición con un plazo total de `timeout` segundos. `requests`
        solo limita la inactividad del socket, así que el cuerpo se lee por
        fragmentos y el plazo se comprueba después de cada uno.
        """
        timeout = timeout or self.timeout
        deadline = self.clock() + timeout
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if authenticated:
            headers.update(self._auth_headers())

        try:
            response = self.http.request(
                method,
                f"{self.base_url}{endpoint}",
                json=payload,
                headers=headers,
                timeout=timeout,
                stream=True,
            )
        except requests.exceptions.Timeout as e:
            raise RegistryTimeoutError(f"Request timeout after {timeout}s: {method} {endpoint}") from e
        except requests.exceptions.RequestException as e:
            raise ProtocolError(f"Error de conexión con KSeF: {e}") from e

        try:
            body = self._read_body(response, deadline, f"Request timeout after {timeout}s: {method} {endpoint}")
        finally:
            response.close()

        if not 200 <= response.status_code < 300:
            raise ProtocolError(f"HTTP {response.status_code}: {self._decode(response, body)}")

        if raw:
            return body

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return json.loads(body)
            except ValueError as e:
                raise ProtocolError(f"JSON inválido en la respuesta de {endpoint}") from e
        return self._decode(response, body)

    def _read_body(self, response: requests.Response, deadline: float, timeout_message: str) -> bytes:
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=BODY_CHUNK_SIZE):
                chunks.append(chunk)
                if self.clock() > deadline:
                    raise RegistryTimeoutError(timeout_message)
        except requests.exceptions.ConnectionError as e:
            # `requests` envuelve el ReadTimeoutError de urllib3 que ocurre a mitad del cuerpo
            if e.args and isinstance(e.args[0], ReadTimeoutError):
                raise RegistryTimeoutError(timeout_message) from e
            raise ProtocolError(f"Error de conexión con KSeF: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProtocolError(f"Error de conexión con KSeF: {e}") from e
        return b"".join(chunks)

    @staticmethod
    def _decode(response: requests.Response, body: bytes) -> str:
        return body.decode(response.encoding or "utf-8", errors="replace")


def build_session_client(tenant_config: TenantConfig, timeout: Optional[float] = None) -> KSeFSessionClient:
    """Crea un cliente nuevo para una descarga, con la URL y la cabecera del entorno de la configuración."""
    environment = tenant_config.environment.value
    return KSeFSessionClient(
        base_url=config.get_api_url(environment),
        auth_header_type=config.SESSION_HEADER_BY_ENVIRONMENT.get(environment, AuthHeaderType.BEARER.value),
        timeout=timeout or config.REQUEST_TIMEOUT_SECONDS,
    )
