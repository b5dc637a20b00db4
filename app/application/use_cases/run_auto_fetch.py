# app/application/use_cases/run_auto_fetch.py
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional

import config
from app.application.use_cases.fetch_invoices import FetchInvoicesUseCase
from app.domain.clock import utcnow
from app.domain.exceptions import FetchInProgressError
from app.domain.masking import anonymize_for_logs
from app.domain.ports.fetch_repository import FetchRepository

logger = logging.getLogger(__name__)


class RunAutoFetchUseCase:
    """
    Recorre las configuraciones con descarga automática cuyo intervalo ya
    venció y lanza una descarga por cada una. El fallo de una configuración
    nunca detiene el recorrido.
    """
    def __init__(self, repository: FetchRepository, fetch_use_case: FetchInvoicesUseCase):
        self.repository = repository
        self.fetch_use_case = fetch_use_case

    def execute(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        configs = self.repository.list_auto_fetch_configs()
        logger.info(f"Se encontraron {len(configs)} configuraciones activas con descarga automática.")

        results = []
        for tenant_config in configs:
            tenant = anonymize_for_logs(tenant_config.tenant_id)
            if not tenant_config.is_due(now):
                logger.info(f"Omitiendo tenant {tenant}: aún no se cumple el intervalo.")
                continue

            logger.info(f"Lanzando descarga para el tenant {tenant}...")
            try:
                fetch_result = self.fetch_use_case.execute(
                    tenant_config.id, subject_type=config.DEFAULT_SUBJECT_TYPE
                )
                results.append({
                    "config_id": tenant_config.id,
                    "success": fetch_result.success,
                    "new_invoices": fetch_result.invoices_new,
                    "error": fetch_result.error_message,
                })
            except FetchInProgressError as e:
                logger.warning(f"Tenant {tenant}: {e}")
                results.append({
                    "config_id": tenant_config.id,
                    "success": False,
                    "skipped": True,
                    "new_invoices": 0,
                    "error": str(e),
                })
            except Exception as e:
                logger.error(f"Error procesando la configuración {tenant_config.id}: {e}", exc_info=True)
                self.repository.rollback()
                results.append({
                    "config_id": tenant_config.id,
                    "success": False,
                    "new_invoices": 0,
                    "error": str(e),
                })

        logger.info(f"Descarga automática finalizada. Configuraciones procesadas: {len(results)}")
        return results
