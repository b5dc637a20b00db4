from datetime import datetime, timedelta

from app.application.use_cases.run_auto_fetch import RunAutoFetchUseCase
from app.domain.exceptions import FetchInProgressError
from app.domain.models.operation import FetchResult, OperationStatus

NOW = datetime(2024, 6, 1, 12, 0)


class RecordingFetchUseCase:
    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    def execute(self, config_id, subject_type="subject1", date_from=None, date_to=None, tenant_id=None):
        self.calls.append((config_id, subject_type, date_from, date_to))
        outcome = self.outcomes.get(config_id)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or FetchResult(operation_id=f"op-{config_id}", status=OperationStatus.SUCCESS, invoices_new=3)


def add_config(repository, tenant_config, config_id, **fields):
    repository.configs[config_id] = tenant_config.model_copy(update={"id": config_id, **fields})


def test_only_due_configs_are_fetched(repository, tenant_config):
    add_config(repository, tenant_config, "config-1", last_fetch_at=NOW - timedelta(minutes=61))
    add_config(repository, tenant_config, "recent", last_fetch_at=NOW - timedelta(minutes=10))
    add_config(repository, tenant_config, "never")
    add_config(repository, tenant_config, "manual", auto_fetch=False)
    add_config(repository, tenant_config, "inactive", is_active=False)
    fetch = RecordingFetchUseCase()

    results = RunAutoFetchUseCase(repository, fetch).execute(now=NOW)

    assert [call[0] for call in fetch.calls] == ["config-1", "never"]
    assert all(call[1:] == ("subject1", None, None) for call in fetch.calls)
    assert results[0] == {"config_id": "config-1", "success": True, "new_invoices": 3, "error": None}


def test_failures_do_not_stop_other_configs(repository, tenant_config):
    add_config(repository, tenant_config, "broken")
    add_config(repository, tenant_config, "busy")
    add_config(repository, tenant_config, "failed")
    fetch = RecordingFetchUseCase({
        "broken": RuntimeError("database unavailable"),
        "busy": FetchInProgressError("already running"),
        "failed": FetchResult(operation_id="op", status=OperationStatus.ERROR, error_message="HTTP 500"),
    })

    results = {r["config_id"]: r for r in RunAutoFetchUseCase(repository, fetch).execute(now=NOW)}

    assert len(fetch.calls) == 4
    assert results["broken"]["success"] is False
    assert results["broken"]["error"] == "database unavailable"
    assert results["busy"]["skipped"] is True
    assert results["failed"] == {"config_id": "failed", "success": False, "new_invoices": 0, "error": "HTTP 500"}
    assert results["config-1"]["success"] is True
    assert repository.rollback_calls == 1


def test_no_configs_yields_empty_summary(repository):
    repository.configs.clear()
    assert RunAutoFetchUseCase(repository, RecordingFetchUseCase()).execute(now=NOW) == []
