import os
from celery import Celery
from typing import Optional
import logging

import config

# --- CONFIGURACIÓN DE CELERY ---

# 1. El broker por defecto es Google Cloud Pub/Sub ('pubsub://').
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "pubsub://")

# 2. Tema de Pub/Sub en el que la API publica las tareas.
CELERY_PUBSUB_TOPIC = os.environ.get("CELERY_PUBSUB_TOPIC", "ksef-invoice-fetch")

celery_app = Celery(
    'tasks',
    broker=CELERY_BROKER_URL,
    backend=None  # Pub/Sub no funciona como backend de resultados.
)

celery_app.conf.update(
    broker_transport_options={
        # Una descarga completa (10 sondeos + paquetes) debe caber aquí
        'visibility_timeout': config.FETCH_LOCK_TIMEOUT_SECONDS,
        'topic': CELERY_PUBSUB_TOPIC,
        'subscription_name_prefix': 'celery-worker-sub'
    },
    task_ignore_result=True,
    timezone='UTC',
    enable_utc=True,
    worker_prefetch_multiplier=1,
)

# Descarga automática: cada 15 minutos (el intervalo mínimo permitido)
celery_app.conf.beat_schedule = {
    'ksef-auto-fetch': {
        'task': 'tasks.run_auto_fetch',
        'schedule': 15 * 60.0,
    },
}

# --- FIN DE LA CONFIGURACIÓN ---


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s')

from app.application.use_cases.fetch_invoices import FetchInvoicesUseCase
from app.application.use_cases.run_auto_fetch import RunAutoFetchUseCase
from app.infrastructure.persistence.database import SessionLocal
from app.infrastructure.persistence.fetch_repository_adapter import PostgreSQLFetchRepository
from app.infrastructure.external.aes_crypto_box import AesGcmCryptoBox
from app.infrastructure.external.ksef_session_client import build_session_client


def build_fetch_use_case(repository: PostgreSQLFetchRepository) -> FetchInvoicesUseCase:
    return FetchInvoicesUseCase(
        repository=repository,
        crypto_box=AesGcmCryptoBox(),
        session_client_factory=build_session_client,
    )


@celery_app.task(name="tasks.fetch_invoices")
def fetch_invoices_task(
    config_id: str,
    subject_type: str = "subject1",
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    tenant_id: Optional[str] = None,
) -> dict:
    logging.info(f"[{config_id}] >>> INICIO DE LA TAREA DE DESCARGA KSeF.")
    db_session = SessionLocal()
    try:
        repository = PostgreSQLFetchRepository(db_session)
        result = build_fetch_use_case(repository).execute(
            config_id, subject_type=subject_type, date_from=date_from, date_to=date_to, tenant_id=tenant_id
        )
        logging.info(f"[{config_id}] Descarga finalizada con estado '{result.status.value}'.")
        return result.model_dump(mode="json")
    except Exception:
        logging.error(f"[{config_id}] ¡ERROR! Se ha capturado una excepción. Iniciando rollback.", exc_info=True)
        db_session.rollback()
        raise
    finally:
        logging.info(f"[{config_id}] Cerrando sesión de base de datos.")
        db_session.close()


@celery_app.task(name="tasks.run_auto_fetch")
def run_auto_fetch_task() -> list:
    logging.info(">>> INICIO DE LA DESCARGA AUTOMÁTICA KSeF.")
    db_session = SessionLocal()
    try:
        repository = PostgreSQLFetchRepository(db_session)
        use_case = RunAutoFetchUseCase(repository, build_fetch_use_case(repository))
        return use_case.execute()
    except Exception:
        logging.error("¡ERROR! Falló la descarga automática. Iniciando rollback.", exc_info=True)
        db_session.rollback()
        raise
    finally:
        db_session.close()
