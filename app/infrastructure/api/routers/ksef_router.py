# app/infrastructure/api/routers/ksef_router.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.application.use_cases.save_tenant_config import SaveTenantConfigUseCase, build_config_request
from app.application.use_cases.test_connection import TestConnectionUseCase
from app.domain.exceptions import ConfigNotFoundError, ConfigurationError, ProtocolError, ValidationError
from app.domain.models.ksef_session import SubjectType
from app.infrastructure.external.aes_crypto_box import AesGcmCryptoBox
from app.infrastructure.external.ksef_session_client import build_session_client
from app.infrastructure.persistence.database import get_db
from app.infrastructure.persistence.fetch_repository_adapter import PostgreSQLFetchRepository
# Importamos la instancia de Celery, no la tarea específica
from app.infrastructure.celery.worker import celery_app

router = APIRouter(prefix="/api/v1/ksef", tags=["KSeF"])


class FetchRequest(BaseModel):
    config_id: str
    subject_type: SubjectType = SubjectType.RECEIVED
    date_from: Optional[date] = None
    date_to: Optional[date] = None


def get_crypto_box() -> AesGcmCryptoBox:
    try:
        return AesGcmCryptoBox()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/configs", summary="Crear o actualizar una conexión con KSeF")
def save_config(
    payload: dict = Body(...),
    x_tenant_id: str = Header(...),
    db: Session = Depends(get_db),
    crypto_box: AesGcmCryptoBox = Depends(get_crypto_box),
):
    try:
        request = build_config_request(payload)
        use_case = SaveTenantConfigUseCase(PostgreSQLFetchRepository(db), crypto_box)
        return {"success": True, "data": use_case.execute(x_tenant_id, request)}
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/configs/{config_id}/test", summary="Probar la conexión de una configuración")
def test_config(
    config_id: str,
    x_tenant_id: str = Header(...),
    db: Session = Depends(get_db),
    crypto_box: AesGcmCryptoBox = Depends(get_crypto_box),
):
    use_case = TestConnectionUseCase(PostgreSQLFetchRepository(db), crypto_box, build_session_client)
    try:
        return {"success": True, "data": use_case.execute(config_id, tenant_id=x_tenant_id)}
    except ConfigNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProtocolError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/fetch", status_code=202, summary="Lanzar una descarga de facturas en segundo plano")
def queue_fetch(request: FetchRequest, x_tenant_id: str = Header(...), db: Session = Depends(get_db)):
    """
    Comprueba que la configuración pertenece al tenant y encola la descarga.
    El resultado queda en el registro de operaciones.
    """
    if PostgreSQLFetchRepository(db).get_tenant_config(request.config_id, x_tenant_id) is None:
        raise HTTPException(status_code=404, detail="Configuration not found")

    celery_app.send_task(
        'tasks.fetch_invoices',
        args=[
            request.config_id,
            request.subject_type.value,
            request.date_from.isoformat() if request.date_from else None,
            request.date_to.isoformat() if request.date_to else None,
            x_tenant_id,
        ]
    )
    return {"status": "fetch_queued", "config_id": request.config_id}


@router.get("/operations/{operation_id}", summary="Consultar el registro de una operación")
def get_operation(operation_id: str, x_tenant_id: str = Header(...), db: Session = Depends(get_db)):
    operation = PostgreSQLFetchRepository(db).find_operation(operation_id)
    if operation is None or operation.tenant_id != x_tenant_id:
        raise HTTPException(status_code=404, detail="Operation not found")
    return operation
