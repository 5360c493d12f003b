"""Shared test fixtures for the decision tree trading engine."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from tradetree.config import (
    AlertSettings,
    AppSettings,
    DatabaseSettings,
    ExecutionSettings,
    OvernightSettings,
    ResilienceSettings,
    VenueSettings,
)

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults (paper mode, no retry delays)."""
    return AppSettings(
        log_level="DEBUG",
        venue=VenueSettings(
            mode="paper",
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
            cost_profile="demo",
            paper_balance=Decimal("100000"),
        ),
        execution=ExecutionSettings(base_delay=0.0),
        resilience=ResilienceSettings(store_retry_attempts=1, store_retry_delay=0.0),
        overnight=OvernightSettings(enabled=False),
        alerts=AlertSettings(),
        database=DatabaseSettings(path=str(tmp_path / "test.db")),
    )


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def raw_signal() -> dict[str, Any]:
    """A valid buy signal matching the Start node example (650 target on 100k)."""
    return {
        "action": "buy",
        "symbol": "BTCUSDT",
        "timeframe": "15m",
        "time": "2024-01-10T11:55:00Z",
        "entry": 45000,
        "target": 46000,
        "stop": 44000,
        "id": "tv-001",
        "rr": 1,
        "risk": 1,
    }
