# app/application/use_cases/fetch_invoices.py
import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Union

import config
from app.application.services.package_parser import PackageParser, normalize_document
from app.domain.clock import utcnow
from app.domain.exceptions import (
    ConfigNotFoundError, FetchInProgressError, PackageParseError, ProtocolError,
    RegistryTimeoutError, StateError,
)
from app.domain.masking import anonymize_for_logs
from app.domain.models.invoice import CanonicalInvoice, InvoiceDocument, InvoiceRegistryEntry, RegistryStatus
from app.domain.models.ksef_session import PackagePart, QueryStatus, SubjectType
from app.domain.models.operation import FetchResult, OperationStatus, OperationType
from app.domain.models.tenant_config import TenantConfig
from app.domain.ports.crypto_box import CryptoBox
from app.domain.ports.fetch_repository import FetchRepository
from app.domain.ports.registry_session_client import RegistrySessionClient

logger = logging.getLogger(__name__)

# Recibe la configuración y, opcionalmente, `timeout=`
SessionClientFactory = Callable[..., RegistrySessionClient]


@dataclass
class FetchCounters:
    packages_count: int = 0
    invoices_found: int = 0
    invoices_processed: int = 0
    invoices_new: int = 0
    duplicates_found: int = 0

    def as_fields(self) -> dict:
        return {
            "packages_count": self.packages_count,
            "invoices_found": self.invoices_found,
            "invoices_processed": self.invoices_processed,
            "invoices_new": self.invoices_new,
            "duplicates_found": self.duplicates_found,
        }


def error_code_for(error: Exception) -> str:
    if isinstance(error, RegistryTimeoutError):
        return "TIMEOUT"
    if isinstance(error, ProtocolError):
        return "PROTOCOL_ERROR"
    if isinstance(error, StateError):
        return "STATE_ERROR"
    return "INTERNAL_ERROR"


class FetchInvoicesUseCase:
    """
    Orquesta una descarga completa de facturas de KSeF para una configuración:
    sesión, consulta con sondeo acotado, descarga de paquetes, deduplicación
    por número de referencia y por hash, y registro de auditoría.
    """
    def __init__(
        self,
        repository: FetchRepository,
        crypto_box: CryptoBox,
        session_client_factory: SessionClientFactory,
        package_parser: Optional[PackageParser] = None,
        poll_attempts: int = config.QUERY_POLL_MAX_ATTEMPTS,
        poll_interval: float = config.QUERY_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if poll_attempts < 1:
            raise ValueError("poll_attempts debe ser al menos 1")
        self.repository = repository
        self.crypto_box = crypto_box
        self.session_client_factory = session_client_factory
        self.package_parser = package_parser or PackageParser(hasher=crypto_box.hash)
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.sleep = sleep

    def execute(
        self,
        config_id: str,
        subject_type: Union[SubjectType, str] = SubjectType.RECEIVED,
        date_from: Optional[Union[str, date]] = None,
        date_to: Optional[Union[str, date]] = None,
        tenant_id: Optional[str] = None,
    ) -> FetchResult:
        """
        Ejecuta la descarga. Los fallos de la descarga quedan registrados en la
        operación y se devuelven en el `FetchResult`; no se propagan.
        """
        tenant_config = self.repository.get_tenant_config(config_id, tenant_id)
        if tenant_config is None:
            raise ConfigNotFoundError(f"Configuración KSeF no encontrada: {config_id}")

        if not self.repository.acquire_fetch_lock(config_id):
            raise FetchInProgressError(f"Ya hay una descarga en curso para la configuración {config_id}")

        try:
            return self._run(tenant_config, SubjectType(subject_type), date_from, date_to)
        finally:
            self._release_lock(config_id)

    def _run(
        self,
        tenant_config: TenantConfig,
        subject_type: SubjectType,
        date_from: Optional[Union[str, date]],
        date_to: Optional[Union[str, date]],
    ) -> FetchResult:
        started = time.monotonic()
        request_data = {
            "config_id": tenant_config.id,
            "subject_type": subject_type.value,
            "date_from": str(date_from) if date_from else None,
            "date_to": str(date_to) if date_to else None,
        }
        operation = self.repository.create_operation(tenant_config.tenant_id, request_data)
        operation_id = operation.id
        counters = FetchCounters()
        logger.info(f"[{operation_id}] Inicio de descarga KSeF para el tenant {anonymize_for_logs(tenant_config.tenant_id)}.")

        try:
            client = None
            try:
                credential = self.crypto_box.decrypt(tenant_config.encrypted_credential)
                client = self.session_client_factory(tenant_config)

                # PASO 1: Sesión
                self.repository.update_operation(
                    operation_id, status=OperationStatus.PROCESSING, type=OperationType.SESSION_INIT
                )
                session = client.init_session(tenant_config.tax_id, credential)
                self.repository.update_operation(
                    operation_id, session_id=session.session_id, type=OperationType.QUERY_START
                )

                # PASO 2: Consulta
                query_id = client.start_query(subject_type, date_from, date_to)
                self.repository.update_operation(operation_id, query_id=query_id, type=OperationType.QUERY_STATUS)

                # PASO 3: Sondeo acotado
                query_status = self._wait_for_results(client, query_id, operation_id)

                # PASO 4: Paquetes
                if query_status.items:
                    counters.packages_count = len(query_status.items)
                    counters.invoices_found = query_status.total_items or len(query_status.items)
                    self.repository.update_operation(
                        operation_id,
                        type=OperationType.QUERY_RESULT,
                        invoices_found=counters.invoices_found,
                        packages_count=counters.packages_count,
                    )
                    for part in query_status.items:
                        self._process_package(client, query_id, part, tenant_config, counters, operation_id)
                else:
                    logger.info(f"[{operation_id}] No se encontraron facturas en el periodo indicado.")
            finally:
                if client is not None:
                    client.close()

            self.repository.update_last_fetch(tenant_config.id, utcnow())
            self._finalize(operation_id, OperationStatus.SUCCESS, counters, started)
            logger.info(
                f"[{operation_id}] Descarga completada: {counters.invoices_new} nuevas, "
                f"{counters.duplicates_found} duplicadas."
            )
            return FetchResult(operation_id=operation_id, status=OperationStatus.SUCCESS, **counters.as_fields())

        except Exception as e:
            status = OperationStatus.TIMEOUT if isinstance(e, RegistryTimeoutError) else OperationStatus.ERROR
            logger.error(f"[{operation_id}] ¡ERROR! La descarga de KSeF falló: {e}", exc_info=True)
            try:
                # La sesión puede haber quedado inutilizable tras un error de base de datos
                self.repository.rollback()
                self._finalize(
                    operation_id, status, counters, started,
                    error_code=error_code_for(e), error_message=str(e),
                )
            except Exception:
                logger.exception(f"[{operation_id}] No se pudo registrar el error en la operación.")
            return FetchResult(
                operation_id=operation_id, status=status, error_message=str(e), **counters.as_fields()
            )

    def _release_lock(self, config_id: str) -> None:
        try:
            self.repository.rollback()
            self.repository.release_fetch_lock(config_id)
        except Exception:
            logger.exception(f"No se pudo liberar el bloqueo de la configuración {config_id}.")

    def _wait_for_results(self, client: RegistrySessionClient, query_id: str, operation_id: str) -> QueryStatus:
        """Sondeo con un número fijo de intentos y una pausa fija entre ellos."""
        for attempt in range(1, self.poll_attempts + 1):
            logger.info(f"[{operation_id}] Consultando estado de la consulta (intento {attempt}/{self.poll_attempts})...")
            query_status = client.poll_query(query_id)
            if query_status.items:
                return query_status
            if attempt < self.poll_attempts:
                self.sleep(self.poll_interval)
        return query_status

    def _process_package(
        self,
        client: RegistrySessionClient,
        query_id: str,
        part: PackagePart,
        tenant_config: TenantConfig,
        counters: FetchCounters,
        operation_id: str,
    ) -> None:
        logger.info(f"[{operation_id}] Procesando paquete {part.part_number}...")
        # Un fallo de descarga aborta la ejecución: el contenido del paquete es desconocido
        package = client.download_package(query_id, part.part_number)

        try:
            documents = self.package_parser.parse_package(package)
        except PackageParseError as e:
            logger.error(f"[{operation_id}] Paquete {part.part_number} ilegible, se omite: {e}")
            return

        counters.invoices_processed += len(documents)
        for document in documents:
            try:
                is_new = self._store_document(tenant_config.tenant_id, document, operation_id)
            except Exception as e:
                logger.error(
                    f"[{operation_id}] No se pudo procesar la factura {document.external_reference_number}: {e}"
                )
                continue

            if is_new:
                counters.invoices_new += 1
            else:
                counters.duplicates_found += 1

        self.repository.update_operation(
            operation_id,
            invoices_processed=counters.invoices_processed,
            invoices_new=counters.invoices_new,
            duplicates_found=counters.duplicates_found,
        )

    def _store_document(self, tenant_id: str, document: InvoiceDocument, operation_id: str) -> bool:
        """Retorna True si la factura es nueva, False si es un duplicado."""
        with self.repository.document_transaction():
            reference = document.external_reference_number
            if self.repository.find_registry_entry_by_reference(tenant_id, reference):
                logger.info(f"[{operation_id}] Factura duplicada por referencia: {reference}")
                return False

            content_hash = document.content_hash or self.crypto_box.hash(
                normalize_document(document.xml_content).encode("utf-8")
            )
            if self.repository.find_registry_entry_by_hash(tenant_id, content_hash):
                logger.info(f"[{operation_id}] Factura duplicada por hash: {content_hash[:8]}...")
                return False

            entry = self.repository.add_registry_entry(
                InvoiceRegistryEntry(
                    tenant_id=tenant_id,
                    external_reference_number=reference,
                    invoice_number=document.invoice_number,
                    content_hash=content_hash,
                    issue_date=document.issue_date,
                    seller_tax_id=document.seller_tax_id,
                    buyer_tax_id=document.buyer_tax_id,
                    total_amount=document.total_amount,
                    currency=document.currency,
                    status=RegistryStatus.FETCHED,
                )
            )
            canonical = self.repository.add_canonical_invoice(
                CanonicalInvoice.from_document(tenant_id, document, fetched_at=utcnow())
            )
            self.repository.mark_registry_entry_processed(entry.id, canonical.id)

        logger.info(f"[{operation_id}] Nueva factura procesada: {document.invoice_number}")
        return True

    def _finalize(
        self,
        operation_id: str,
        status: OperationStatus,
        counters: FetchCounters,
        started: float,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.repository.update_operation(
            operation_id,
            status=status,
            error_code=error_code,
            error_message=error_message,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            completed_at=utcnow(),
            **counters.as_fields(),
        )
