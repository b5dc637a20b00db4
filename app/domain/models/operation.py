# app/domain/models/operation.py
from enum import Enum
from pydantic import BaseModel, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime


class OperationType(str, Enum):
    SESSION_INIT = "session_init"
    QUERY_START = "query_start"
    QUERY_STATUS = "query_status"
    QUERY_RESULT = "query_result"
    INVOICE_FETCH = "invoice_fetch"


class OperationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class Operation(BaseModel):
    """Registro de auditoría de una descarga de facturas."""
    id: str
    tenant_id: str
    type: OperationType = OperationType.INVOICE_FETCH
    status: OperationStatus = OperationStatus.PENDING
    session_id: Optional[str] = None
    query_id: Optional[str] = None
    request_data: Optional[Dict[str, Any]] = None
    invoices_found: int = 0
    invoices_processed: int = 0
    invoices_new: int = 0
    duplicates_found: int = 0
    packages_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class FetchResult(BaseModel):
    """Resultado devuelto al llamador (planificador o disparo manual)."""
    operation_id: str
    status: OperationStatus
    packages_count: int = 0
    invoices_found: int = 0
    invoices_processed: int = 0
    invoices_new: int = 0
    duplicates_found: int = 0
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == OperationStatus.SUCCESS
