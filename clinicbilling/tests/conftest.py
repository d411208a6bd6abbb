from __future__ import annotations

import os
import tempfile

# The engine is built at import time, so point it at SQLite before any package import.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="clinicbilling-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'billing.db')}")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("PAYMENT_GATEWAY_PROVIDER", "fake")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "whsec_test")

import pytest  # noqa: E402

from clinicbilling.core.config import get_settings  # noqa: E402
from clinicbilling.domain.models import Base  # noqa: E402
from clinicbilling.persistence.db import engine  # noqa: E402
from clinicbilling.providers.gateway.factory import reset_payment_gateway  # noqa: E402
from clinicbilling.services.resilience import reset_circuit_breakers, reset_resilience_redis  # noqa: E402
from clinicbilling.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def billing_schema(dispose_engine_between_tests) -> None:
    # Fresh tables per test keep lifecycle scenarios independent.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings, the fake gateway script and breaker state are process-wide.
    yield
    get_settings.cache_clear()
    reset_payment_gateway()
    reset_circuit_breakers()
    reset_resilience_redis()
    reset_telemetry()
