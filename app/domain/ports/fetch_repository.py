# app/domain/ports/fetch_repository.py
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional, Dict, Any

from app.domain.models.invoice import InvoiceRegistryEntry, CanonicalInvoice
from app.domain.models.operation import Operation
from app.domain.models.tenant_config import TenantConfig


class FetchRepository(ABC):
    """
    Contrato de persistencia para las descargas de KSeF: configuraciones,
    operaciones de auditoría, registro de facturas y facturas canónicas.
    """

    # --- Configuraciones ---

    @abstractmethod
    def get_tenant_config(self, config_id: str, tenant_id: Optional[str] = None) -> Optional[TenantConfig]:
        """Busca una configuración. Si se indica `tenant_id`, debe pertenecer a ese tenant."""
        pass

    @abstractmethod
    def list_auto_fetch_configs(self) -> List[TenantConfig]:
        """Configuraciones activas con descarga automática habilitada."""
        pass

    @abstractmethod
    def save_tenant_config(self, tenant_config: TenantConfig) -> TenantConfig:
        pass

    @abstractmethod
    def update_last_fetch(self, config_id: str, fetched_at: datetime) -> None:
        pass

    @abstractmethod
    def acquire_fetch_lock(self, config_id: str) -> bool:
        """
        Marca la configuración como 'en descarga' solo si no lo estaba,
        o si la marca anterior quedó abandonada (más antigua que
        `config.FETCH_LOCK_TIMEOUT_SECONDS`). Retorna False si otra descarga
        la tiene tomada.
        """
        pass

    @abstractmethod
    def release_fetch_lock(self, config_id: str) -> None:
        pass

    # --- Operaciones ---

    @abstractmethod
    def create_operation(self, tenant_id: str, request_data: Dict[str, Any]) -> Operation:
        pass

    @abstractmethod
    def update_operation(self, operation_id: str, **fields: Any) -> None:
        pass

    @abstractmethod
    def find_operation(self, operation_id: str) -> Optional[Operation]:
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Descarta la transacción en curso tras un fallo para que la sesión vuelva a ser usable."""
        pass

    # --- Registro de facturas ---

    @abstractmethod
    def document_transaction(self) -> AbstractContextManager:
        """
        Unidad de trabajo para un documento: se confirma al salir sin errores
        y se revierte si el bloque lanza una excepción (como PersistenceError).
        """
        pass

    @abstractmethod
    def find_registry_entry_by_reference(self, tenant_id: str, reference_number: str) -> Optional[InvoiceRegistryEntry]:
        pass

    @abstractmethod
    def find_registry_entry_by_hash(self, tenant_id: str, content_hash: str) -> Optional[InvoiceRegistryEntry]:
        pass

    @abstractmethod
    def add_registry_entry(self, entry: InvoiceRegistryEntry) -> InvoiceRegistryEntry:
        pass

    @abstractmethod
    def add_canonical_invoice(self, invoice: CanonicalInvoice) -> CanonicalInvoice:
        pass

    @abstractmethod
    def mark_registry_entry_processed(self, entry_id: str, canonical_invoice_id: str) -> None:
        pass
