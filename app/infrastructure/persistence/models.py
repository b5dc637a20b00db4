# app/infrastructure/persistence/models.py
from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

from app.domain.clock import utcnow


class Base(DeclarativeBase):
    pass


class KsefConfig(Base):
    __tablename__ = "ksef_config"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    environment = Column(String(16), nullable=False)
    tax_id = Column(String(10), nullable=False)
    encrypted_credential = Column(Text, nullable=False)
    auto_fetch = Column(Boolean, nullable=False, default=False)
    fetch_interval_minutes = Column(Integer, nullable=False, default=60)
    is_active = Column(Boolean, nullable=False, default=True)
    fetch_in_progress = Column(Boolean, nullable=False, default=False)
    fetch_started_at = Column(DateTime)
    last_fetch_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_ksef_config_tenant", "tenant_id"),
    )


class KsefFetchOperation(Base):
    __tablename__ = "ksef_fetch_operations"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    type = Column(String(32), nullable=False, default="invoice_fetch")
    status = Column(String(16), nullable=False, default="pending")
    session_id = Column(String(255))
    query_id = Column(String(255))
    request_data = Column(JSON)
    invoices_found = Column(Integer, nullable=False, default=0)
    invoices_processed = Column(Integer, nullable=False, default=0)
    invoices_new = Column(Integer, nullable=False, default=0)
    duplicates_found = Column(Integer, nullable=False, default=0)
    packages_count = Column(Integer, nullable=False, default=0)
    error_code = Column(String(32))
    error_message = Column(Text)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("idx_ksef_operations_tenant", "tenant_id", "created_at"),
    )


class ParsedInvoice(Base):
    """Factura canónica visible en el panel."""
    __tablename__ = "parsed_data"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    source_type = Column(String(16), nullable=False, default="ksef")
    invoice_number = Column(String(255), nullable=False)
    issue_date = Column(Date)
    seller_name = Column(String(512))
    seller_tax_id = Column(String(32))
    buyer_name = Column(String(512))
    buyer_tax_id = Column(String(32))
    total_amount = Column(Float, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="PLN")
    external_reference_number = Column(String(255), nullable=False)
    original_xml = Column(Text, nullable=False)
    fetched_at = Column(DateTime, default=utcnow)


class KsefInvoiceRegistry(Base):
    __tablename__ = "ksef_invoice_registry"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    external_reference_number = Column(String(255), nullable=False)
    invoice_number = Column(String(255))
    content_hash = Column(String(64), nullable=False)
    issue_date = Column(Date)
    seller_tax_id = Column(String(32), nullable=False)
    buyer_tax_id = Column(String(32))
    total_amount = Column(Float, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="PLN")
    status = Column(String(16), nullable=False, default="fetched")
    canonical_invoice_id = Column(String(36), ForeignKey("parsed_data.id"))
    first_seen_at = Column(DateTime, default=utcnow)
    last_updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_reference_number", name="uq_registry_tenant_reference"),
        UniqueConstraint("tenant_id", "content_hash", name="uq_registry_tenant_hash"),
    )
