# app/domain/models/tenant_config.py
from enum import Enum
from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime, timedelta


class Environment(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


class TenantConfig(BaseModel):
    """Conexión de un tenant con KSeF. El token se guarda siempre cifrado."""
    id: str
    tenant_id: str
    environment: Environment
    tax_id: str
    encrypted_credential: str
    auto_fetch: bool = False
    fetch_interval_minutes: int = 60
    is_active: bool = True
    fetch_in_progress: bool = False
    fetch_started_at: Optional[datetime] = None
    last_fetch_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_due(self, now: datetime) -> bool:
        """True si ya pasó el intervalo de descarga automática desde la última descarga."""
        if self.last_fetch_at is None:
            return True
        return now - self.last_fetch_at >= timedelta(minutes=self.fetch_interval_minutes)

    def public_view(self) -> dict:
        return self.model_dump(exclude={"encrypted_credential"})
