from __future__ import annotations

import hashlib
import io
import os
import uuid
import zipfile
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytest

# Antes de importar módulos que leen el entorno al cargarse
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("KSEF_ENCRYPTION_KEY", "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")

import config
from app.domain.clock import utcnow
from app.domain.exceptions import PersistenceError, StateError
from app.domain.models.invoice import CanonicalInvoice, InvoiceRegistryEntry, RegistryStatus
from app.domain.models.ksef_session import PackagePart, QueryStatus, Session
from app.domain.models.operation import Operation
from app.domain.models.tenant_config import Environment, TenantConfig
from app.domain.ports.crypto_box import CryptoBox
from app.domain.ports.fetch_repository import FetchRepository
from app.domain.ports.registry_session_client import RegistrySessionClient

TEST_NIP = "5811870973"


class FakeCryptoBox(CryptoBox):
    def encrypt(self, plaintext: str) -> str:
        return f"enc:{plaintext}"

    def decrypt(self, encrypted: str) -> str:
        return encrypted.removeprefix("enc:")

    def hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()


class InMemoryFetchRepository(FetchRepository):
    """Repositorio en memoria con las mismas reglas de unicidad que la base de datos."""

    def __init__(self, configs: Iterable[TenantConfig] = ()) -> None:
        self.configs: Dict[str, TenantConfig] = {c.id: c for c in configs}
        self.operations: Dict[str, Operation] = {}
        self.registry: Dict[str, InvoiceRegistryEntry] = {}
        self.canonical: Dict[str, CanonicalInvoice] = {}
        self.fail_canonical_for: set[str] = set()
        self.operation_updates: List[Dict[str, Any]] = []
        self.fail_update_with_field: Optional[str] = None
        self.rollback_calls = 0

    def rollback(self):
        self.rollback_calls += 1

    def get_tenant_config(self, config_id, tenant_id=None):
        config = self.configs.get(config_id)
        if config is None or (tenant_id is not None and config.tenant_id != tenant_id):
            return None
        return config

    def list_auto_fetch_configs(self):
        return [c for c in self.configs.values() if c.is_active and c.auto_fetch]

    def save_tenant_config(self, config):
        self.configs[config.id] = config
        return config

    def update_last_fetch(self, config_id, fetched_at):
        self.configs[config_id] = self.configs[config_id].model_copy(update={"last_fetch_at": fetched_at})

    def acquire_fetch_lock(self, config_id):
        tenant_config = self.configs[config_id]
        now = utcnow()
        stale_before = now - timedelta(seconds=config.FETCH_LOCK_TIMEOUT_SECONDS)
        started_at = tenant_config.fetch_started_at
        if tenant_config.fetch_in_progress and started_at is not None and started_at >= stale_before:
            return False
        self.configs[config_id] = tenant_config.model_copy(
            update={"fetch_in_progress": True, "fetch_started_at": now}
        )
        return True

    def release_fetch_lock(self, config_id):
        self.configs[config_id] = self.configs[config_id].model_copy(
            update={"fetch_in_progress": False, "fetch_started_at": None}
        )

    def create_operation(self, tenant_id, request_data):
        operation = Operation(id=str(uuid.uuid4()), tenant_id=tenant_id, request_data=request_data,
                              created_at=datetime.now())
        self.operations[operation.id] = operation
        return operation

    def update_operation(self, operation_id, **fields):
        if self.fail_update_with_field in fields:
            self.fail_update_with_field = None
            raise PersistenceError("database is locked")
        self.operation_updates.append(fields)
        self.operations[operation_id] = self.operations[operation_id].model_copy(update=fields)

    def find_operation(self, operation_id):
        return self.operations.get(operation_id)

    @contextmanager
    def document_transaction(self):
        registry, canonical = dict(self.registry), dict(self.canonical)
        try:
            yield
        except Exception:
            self.registry, self.canonical = registry, canonical
            raise

    def find_registry_entry_by_reference(self, tenant_id, reference_number):
        return next((e for e in self.registry.values()
                     if e.tenant_id == tenant_id and e.external_reference_number == reference_number), None)

    def find_registry_entry_by_hash(self, tenant_id, content_hash):
        return next((e for e in self.registry.values()
                     if e.tenant_id == tenant_id and e.content_hash == content_hash), None)

    def add_registry_entry(self, entry):
        if self.find_registry_entry_by_reference(entry.tenant_id, entry.external_reference_number) or \
                self.find_registry_entry_by_hash(entry.tenant_id, entry.content_hash):
            raise PersistenceError("unique constraint violated")
        stored = entry.model_copy(update={"id": str(uuid.uuid4())})
        self.registry[stored.id] = stored
        return stored

    def add_canonical_invoice(self, invoice):
        if invoice.external_reference_number in self.fail_canonical_for:
            raise PersistenceError("simulated storage failure")
        stored = invoice.model_copy(update={"id": str(uuid.uuid4())})
        self.canonical[stored.id] = stored
        return stored

    def mark_registry_entry_processed(self, entry_id, canonical_invoice_id):
        self.registry[entry_id] = self.registry[entry_id].model_copy(
            update={"status": RegistryStatus.PROCESSED, "canonical_invoice_id": canonical_invoice_id}
        )


class FakeSessionClient(RegistrySessionClient):
    """Cliente de KSeF con respuestas programadas; registra cada llamada."""

    def __init__(
        self,
        poll_responses: Optional[List[QueryStatus]] = None,
        packages: Optional[Dict[str, bytes]] = None,
        errors: Optional[Dict[str, Exception]] = None,
    ) -> None:
        self.poll_responses = list(poll_responses or [])
        self.packages = packages or {}
        self.errors = errors or {}
        self.calls: List[str] = []
        self.close_calls = 0
        self.session: Optional[Session] = None
        self.query_args: Optional[tuple] = None

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    def test_connection(self):
        self.calls.append("test_connection")
        return "test_connection" not in self.errors

    def get_challenge(self, tax_id):
        raise NotImplementedError

    def init_session(self, tax_id, credential):
        self._maybe_fail("init_session")
        self.credential = credential
        self.session = Session(session_id="session-123", session_token="token-abc")
        return self.session

    def start_query(self, subject_type, date_from=None, date_to=None):
        if self.session is None:
            raise StateError("no session")
        self._maybe_fail("start_query")
        self.query_args = (subject_type, date_from, date_to)
        return "query-1"

    def poll_query(self, query_id):
        self._maybe_fail("poll_query")
        if self.poll_responses:
            return self.poll_responses.pop(0)
        return QueryStatus(query_id=query_id)

    def download_package(self, query_id, part_number):
        self._maybe_fail("download_package")
        return self.packages[part_number]

    def close(self):
        self.close_calls += 1
        self.session = None


def build_invoice_xml(
    reference: str,
    number: str = "FV/1/2024",
    total: str = "123.00",
    seller_nip: str = "1111111111",
    buyer_nip: Optional[str] = TEST_NIP,
    pretty: bool = False,
) -> str:
    buyer = f"<P_4A>Odbiorca Sp. z o.o.</P_4A><P_4B>{buyer_nip}</P_4B>" if buyer_nip else ""
    body = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Faktura>"
        f"<ElementReferenceNumber>{reference}</ElementReferenceNumber>"
        "<Fa>"
        "<KodWaluty>PLN</KodWaluty>"
        "<P_1>2024-01-15</P_1>"
        f"<P_2>{number}</P_2>"
        f"<P_3A>Sprzedawca S.A.</P_3A><P_3B>{seller_nip}</P_3B>"
        f"{buyer}"
        f"<P_15>{total}</P_15>"
        "</Fa>"
        "</Faktura>"
    )
    if pretty:
        body = body.replace("><", ">\n    <")
    return body


def build_zip_package(documents: Iterable[tuple]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in documents:
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def invoice_xml():
    return build_invoice_xml


@pytest.fixture
def zip_package():
    return build_zip_package


@pytest.fixture
def crypto_box():
    return FakeCryptoBox()


@pytest.fixture
def tenant_config():
    return TenantConfig(
        id="config-1",
        tenant_id="tenant-1",
        environment=Environment.TEST,
        tax_id=TEST_NIP,
        encrypted_credential="enc:secret-ksef-token",
        auto_fetch=True,
        fetch_interval_minutes=60,
    )


@pytest.fixture
def repository(tenant_config):
    return InMemoryFetchRepository([tenant_config])


@pytest.fixture
def session_client_cls():
    return FakeSessionClient


@pytest.fixture
def query_status():
    def _build(parts: List[str], total_items: int = 0) -> QueryStatus:
        return QueryStatus(
            query_id="query-1",
            items=[PackagePart(part_number=p, size=100) for p in parts],
            total_items=total_items,
        )
    return _build
