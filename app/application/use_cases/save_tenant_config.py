# app/application/use_cases/save_tenant_config.py
import logging
import re
import uuid
from typing import Optional

from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PydanticValidationError

import config
from app.domain.clock import utcnow
from app.domain.exceptions import ConfigNotFoundError, ValidationError
from app.domain.masking import anonymize_for_logs
from app.domain.models.tenant_config import Environment, TenantConfig
from app.domain.ports.crypto_box import CryptoBox
from app.domain.ports.fetch_repository import FetchRepository

logger = logging.getLogger(__name__)

NIP_RE = re.compile(r"^[0-9]{10}$")


class TenantConfigRequest(BaseModel):
    """Datos recibidos para crear o actualizar una conexión con KSeF. El token llega en claro."""
    id: Optional[str] = None
    environment: Environment
    tax_id: str
    credential: str
    auto_fetch: bool = False
    fetch_interval_minutes: int = 60

    @field_validator("tax_id")
    @classmethod
    def validate_tax_id(cls, value: str) -> str:
        if not NIP_RE.match(value):
            raise ValueError("Invalid NIP format - must be exactly 10 digits")
        return value

    @field_validator("credential")
    @classmethod
    def validate_credential(cls, value: str) -> str:
        if not 10 <= len(value) <= 1000:
            raise ValueError("Invalid token format")
        return value

    @field_validator("fetch_interval_minutes")
    @classmethod
    def validate_interval(cls, value: int) -> int:
        if value not in config.ALLOWED_FETCH_INTERVALS:
            raise ValueError("Invalid fetch interval")
        return value


class SaveTenantConfigUseCase:
    def __init__(self, repository: FetchRepository, crypto_box: CryptoBox):
        self.repository = repository
        self.crypto_box = crypto_box

    def execute(self, tenant_id: str, request: TenantConfigRequest) -> dict:
        """
        Cifra el token y guarda la configuración. Retorna la configuración
        guardada sin el token cifrado.
        """
        logger.info(f"Guardando configuración KSeF del tenant {anonymize_for_logs(tenant_id)}...")
        now = utcnow()

        if request.id:
            existing = self.repository.get_tenant_config(request.id, tenant_id)
            if existing is None:
                raise ConfigNotFoundError(f"Configuración KSeF no encontrada: {request.id}")
            tenant_config = existing.model_copy(update={
                "environment": request.environment,
                "tax_id": request.tax_id,
                "encrypted_credential": self.crypto_box.encrypt(request.credential),
                "auto_fetch": request.auto_fetch,
                "fetch_interval_minutes": request.fetch_interval_minutes,
                "updated_at": now,
            })
        else:
            tenant_config = TenantConfig(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                environment=request.environment,
                tax_id=request.tax_id,
                encrypted_credential=self.crypto_box.encrypt(request.credential),
                auto_fetch=request.auto_fetch,
                fetch_interval_minutes=request.fetch_interval_minutes,
                created_at=now,
                updated_at=now,
            )

        saved = self.repository.save_tenant_config(tenant_config)
        logger.info(f"Configuración KSeF guardada: {saved.id}")
        return saved.public_view()


def build_config_request(payload: dict) -> TenantConfigRequest:
    """Convierte los errores de pydantic en `ValidationError` del dominio."""
    try:
        return TenantConfigRequest(**payload)
    except PydanticValidationError as e:
        messages = "; ".join(error["msg"].removeprefix("Value error, ") for error in e.errors())
        raise ValidationError(messages) from e
