# app/domain/models/ksef_session.py
from enum import Enum
from pydantic import BaseModel
from typing import List


class SubjectType(str, Enum):
    RECEIVED = "subject1"    # Facturas recibidas por el tenant
    ISSUED = "subject2"      # Facturas emitidas por el tenant
    ALL = "subject3"         # Todas las facturas asociadas al tenant


class AuthHeaderType(str, Enum):
    BEARER = "bearer"
    SESSION_TOKEN = "session-token"


class Challenge(BaseModel):
    challenge: str
    timestamp: str


class Session(BaseModel):
    """Sesión efímera de KSeF. Nunca se persiste."""
    session_id: str
    session_token: str


class PackagePart(BaseModel):
    part_number: str
    size: int = 0


class QueryStatus(BaseModel):
    query_id: str
    items: List[PackagePart] = []
    has_more: bool = False
    total_items: int = 0
