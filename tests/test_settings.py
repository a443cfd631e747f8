import pytest
from pydantic import ValidationError

from tee_jobs.settings import Settings, WorkerRole


def test_lease_must_outlive_processor_timeout():
    with pytest.raises(ValidationError):
        Settings(QUEUE_LEASE_TIMEOUT_SECONDS=60, TEE_PROCESS_TIMEOUT_SECONDS=120)

    assert Settings(QUEUE_LEASE_TIMEOUT_SECONDS=121, TEE_PROCESS_TIMEOUT_SECONDS=120)


def test_worker_instance_id_is_generated(monkeypatch):
    monkeypatch.delenv("WORKER_INSTANCE_ID", raising=False)
    monkeypatch.setenv("HOSTNAME", "box-7")

    assert Settings().WORKER_INSTANCE_ID.startswith("worker-box-7-")


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("JOB_QUEUE_NAME", "refinement-eu")
    monkeypatch.setenv("JOB_MAX_RETRIES", "5")
    monkeypatch.setenv("WORKER_ROLE", "worker")

    configured = Settings()

    assert configured.JOB_QUEUE_NAME == "refinement-eu"
    assert configured.JOB_MAX_RETRIES == 5
    assert configured.WORKER_ROLE == WorkerRole.WORKER


def test_unknown_role_is_rejected():
    with pytest.raises(ValidationError):
        Settings(WORKER_ROLE="scheduler")
