# app/infrastructure/persistence/fetch_repository_adapter.py
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from app.domain.clock import utcnow
from app.domain.exceptions import PersistenceError
from app.domain.models.invoice import CanonicalInvoice, InvoiceRegistryEntry, RegistryStatus
from app.domain.models.operation import Operation, OperationStatus, OperationType
from app.domain.models.tenant_config import TenantConfig
from app.domain.ports.fetch_repository import FetchRepository
from .models import KsefConfig, KsefFetchOperation, KsefInvoiceRegistry, ParsedInvoice

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class PostgreSQLFetchRepository(FetchRepository):
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Error de base de datos: {e}") from e
        except Exception:
            self.db.rollback()
            raise

    def rollback(self) -> None:
        self.db.rollback()

    # --- Configuraciones ---

    def get_tenant_config(self, config_id: str, tenant_id: Optional[str] = None) -> Optional[TenantConfig]:
        query = self.db.query(KsefConfig).filter(KsefConfig.id == config_id)
        if tenant_id is not None:
            query = query.filter(KsefConfig.tenant_id == tenant_id)
        row = query.first()
        return TenantConfig.model_validate(row) if row else None

    def list_auto_fetch_configs(self) -> List[TenantConfig]:
        rows = (
            self.db.query(KsefConfig)
            .filter(KsefConfig.is_active.is_(True), KsefConfig.auto_fetch.is_(True))
            .order_by(KsefConfig.created_at)
            .all()
        )
        return [TenantConfig.model_validate(row) for row in rows]

    def save_tenant_config(self, tenant_config: TenantConfig) -> TenantConfig:
        with self._transaction():
            row = self.db.get(KsefConfig, tenant_config.id)
            if row is None:
                row = KsefConfig(id=tenant_config.id)
                self.db.add(row)

            for field, value in tenant_config.model_dump(exclude={"id"}).items():
                if value is None and field in ("created_at", "updated_at"):
                    continue
                setattr(row, field, _plain(value))

        self.db.refresh(row)
        return TenantConfig.model_validate(row)

    def update_last_fetch(self, config_id: str, fetched_at: datetime) -> None:
        with self._transaction():
            self.db.query(KsefConfig).filter(KsefConfig.id == config_id).update(
                {KsefConfig.last_fetch_at: fetched_at, KsefConfig.updated_at: utcnow()}
            )

    def acquire_fetch_lock(self, config_id: str) -> bool:
        # Actualización condicional: solo una descarga puede tomar la configuración.
        # Un bloqueo más antiguo que FETCH_LOCK_TIMEOUT_SECONDS se considera abandonado.
        now = utcnow()
        stale_before = now - timedelta(seconds=config.FETCH_LOCK_TIMEOUT_SECONDS)
        with self._transaction():
            result = self.db.execute(
                update(KsefConfig)
                .where(
                    KsefConfig.id == config_id,
                    or_(
                        KsefConfig.fetch_in_progress.is_(False),
                        KsefConfig.fetch_started_at.is_(None),
                        KsefConfig.fetch_started_at < stale_before,
                    ),
                )
                .values(fetch_in_progress=True, fetch_started_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def release_fetch_lock(self, config_id: str) -> None:
        with self._transaction():
            self.db.execute(
                update(KsefConfig)
                .where(KsefConfig.id == config_id)
                .values(fetch_in_progress=False, fetch_started_at=None)
                .execution_options(synchronize_session=False)
            )

    # --- Operaciones ---

    def create_operation(self, tenant_id: str, request_data: Dict[str, Any]) -> Operation:
        row = KsefFetchOperation(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            type=OperationType.INVOICE_FETCH.value,
            status=OperationStatus.PENDING.value,
            request_data=request_data,
            created_at=utcnow(),
        )
        with self._transaction():
            self.db.add(row)
        logger.info(f"Nueva operación KSeF creada: {row.id}")
        return Operation.model_validate(row)

    def update_operation(self, operation_id: str, **fields: Any) -> None:
        with self._transaction():
            row = self.db.get(KsefFetchOperation, operation_id)
            if row is None:
                raise PersistenceError(f"Operación no encontrada: {operation_id}")
            for field, value in fields.items():
                setattr(row, field, _plain(value))

    def find_operation(self, operation_id: str) -> Optional[Operation]:
        """Busca una operación por su ID en la tabla 'ksef_fetch_operations'."""
        row = self.db.get(KsefFetchOperation, operation_id)
        return Operation.model_validate(row) if row else None

    # --- Registro de facturas ---

    @contextmanager
    def document_transaction(self) -> Iterator[None]:
        with self._transaction():
            yield

    def find_registry_entry_by_reference(self, tenant_id: str, reference_number: str) -> Optional[InvoiceRegistryEntry]:
        row = (
            self.db.query(KsefInvoiceRegistry)
            .filter(
                KsefInvoiceRegistry.tenant_id == tenant_id,
                KsefInvoiceRegistry.external_reference_number == reference_number,
            )
            .first()
        )
        return InvoiceRegistryEntry.model_validate(row) if row else None

    def find_registry_entry_by_hash(self, tenant_id: str, content_hash: str) -> Optional[InvoiceRegistryEntry]:
        row = (
            self.db.query(KsefInvoiceRegistry)
            .filter(
                KsefInvoiceRegistry.tenant_id == tenant_id,
                KsefInvoiceRegistry.content_hash == content_hash,
            )
            .first()
        )
        return InvoiceRegistryEntry.model_validate(row) if row else None

    def add_registry_entry(self, entry: InvoiceRegistryEntry) -> InvoiceRegistryEntry:
        now = utcnow()
        row = KsefInvoiceRegistry(
            id=entry.id or str(uuid.uuid4()),
            **{field: _plain(value) for field, value in entry.model_dump(exclude={"id", "first_seen_at", "last_updated_at"}).items()},
            first_seen_at=now,
            last_updated_at=now,
        )
        self.db.add(row)
        self.db.flush()
        return InvoiceRegistryEntry.model_validate(row)

    def add_canonical_invoice(self, invoice: CanonicalInvoice) -> CanonicalInvoice:
        row = ParsedInvoice(
            id=invoice.id or str(uuid.uuid4()),
            **invoice.model_dump(exclude={"id"}),
        )
        self.db.add(row)
        self.db.flush()
        return CanonicalInvoice.model_validate(row)

    def mark_registry_entry_processed(self, entry_id: str, canonical_invoice_id: str) -> None:
        row = self.db.get(KsefInvoiceRegistry, entry_id)
        if row is None:
            raise PersistenceError(f"Entrada de registro no encontrada: {entry_id}")
        row.canonical_invoice_id = canonical_invoice_id
        row.status = RegistryStatus.PROCESSED.value
        row.last_updated_at = utcnow()
        self.db.flush()
