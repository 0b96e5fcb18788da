from __future__ import annotations

import pytest
from sqlalchemy.exc import SQLAlchemyError

from skugate.core.config import get_settings
from skugate.domain.models import Base
from skugate.persistence.db import engine
from skugate.services import notifier as notifier_module
from skugate.services.notifier import ChangeNotifier
from skugate.services.policy_resolver import reset_policy_cache
from skugate.services.policy_store import reset_policy_store
from skugate.services.quota import reset_quota_enforcer
from skugate.services.telemetry import reset_telemetry


_schema_state: dict[str, bool] = {}


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch: pytest.MonkeyPatch) -> None:
    # Recounts run in-process and nothing is published to Redis during tests.
    monkeypatch.setenv("RECONCILE_EXECUTION_MODE", "inline")
    monkeypatch.setenv("NOTIFY_ENABLED", "false")
    get_settings.cache_clear()
    reset_policy_cache()
    reset_policy_store()
    reset_quota_enforcer()
    reset_telemetry()
    # A bare notifier: tests that need the default handlers register them explicitly.
    monkeypatch.setattr(notifier_module, "_notifier", ChangeNotifier(enabled=False))
    yield
    get_settings.cache_clear()
    reset_policy_cache()


@pytest.fixture
async def db_ready() -> None:
    # Create the schema once per run; skip DB-backed tests when Postgres is not reachable.
    if "ready" not in _schema_state:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            _schema_state["ready"] = True
        except (OSError, SQLAlchemyError):
            _schema_state["ready"] = False
    if not _schema_state["ready"]:
        pytest.skip("Postgres is not reachable")
