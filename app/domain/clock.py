# app/domain/clock.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Hora UTC sin zona horaria, tal como se guarda en la base de datos."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
