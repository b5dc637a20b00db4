# app/domain/models/invoice.py
from enum import Enum
from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import date, datetime


class DocumentVariant(str, Enum):
    FA2 = "FA2"          # KSeF 1.0
    FA3 = "FA3"          # KSeF 2.0, se lee con las etiquetas de FA(2)
    UNKNOWN = "UNKNOWN"


class InvoiceDocument(BaseModel):
    """
    Representa los datos extraídos de un XML de factura descargado de KSeF,
    junto con el hash del contenido normalizado usado para detectar duplicados.
    """
    # --- Campos del XML ---
    external_reference_number: str
    invoice_number: str
    issue_date: date
    seller_name: str
    seller_tax_id: str
    buyer_name: str
    buyer_tax_id: Optional[str] = None
    total_amount: float
    currency: str = "PLN"
    variant: DocumentVariant = DocumentVariant.FA2

    # --- Trazabilidad ---
    xml_content: str
    content_hash: Optional[str] = None


class RegistryStatus(str, Enum):
    FETCHED = "fetched"
    PROCESSED = "processed"
    ERROR = "error"
    DUPLICATE = "duplicate"


class InvoiceRegistryEntry(BaseModel):
    """Fila del registro de facturas vistas por un tenant (clave de deduplicación)."""
    id: Optional[str] = None
    tenant_id: str
    external_reference_number: str
    invoice_number: Optional[str] = None
    content_hash: str
    issue_date: Optional[date] = None
    seller_tax_id: str
    buyer_tax_id: Optional[str] = None
    total_amount: float
    currency: str
    status: RegistryStatus = RegistryStatus.FETCHED
    canonical_invoice_id: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CanonicalInvoice(BaseModel):
    """Factura en su forma visible para el usuario, uno a uno con una entrada procesada del registro."""
    id: Optional[str] = None
    tenant_id: str
    source_type: str = "ksef"
    invoice_number: str
    issue_date: Optional[date] = None
    seller_name: str
    seller_tax_id: str
    buyer_name: str
    buyer_tax_id: Optional[str] = None
    total_amount: float
    currency: str
    external_reference_number: str
    original_xml: str
    fetched_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_document(cls, tenant_id: str, document: InvoiceDocument, fetched_at: datetime) -> "CanonicalInvoice":
        return cls(
            tenant_id=tenant_id,
            invoice_number=document.invoice_number,
            issue_date=document.issue_date,
            seller_name=document.seller_name,
            seller_tax_id=document.seller_tax_id,
            buyer_name=document.buyer_name,
            buyer_tax_id=document.buyer_tax_id,
            total_amount=document.total_amount,
            currency=document.currency,
            external_reference_number=document.external_reference_number,
            original_xml=document.xml_content,
            fetched_at=fetched_at,
        )
