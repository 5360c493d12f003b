"""Tests for signal intake validation and normalization."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradetree.config import SignalSettings
from tradetree.exceptions import DuplicateSignalError, SignalValidationError
from tradetree.models import Action
from tradetree.signals.normalizer import (
    SignalNormalizer,
    normalize_timeframe,
    parse_signal_time,
)


@pytest.fixture
def normalizer() -> SignalNormalizer:
    return SignalNormalizer(SignalSettings())


class TestNormalize:
    def test_valid_signal(self, normalizer, raw_signal, now) -> None:
        signal, warnings = normalizer.normalize(raw_signal, now=now)

        assert signal.action == Action.BUY
        assert signal.symbol == "BTCUSDT"
        assert signal.entry == Decimal("45000")
        assert signal.timeframe == "15m"
        assert signal.signal_time == datetime(2024, 1, 10, 11, 55, tzinfo=timezone.utc)
        assert warnings == []

    def test_long_alias_and_lowercase_symbol(self, normalizer, raw_signal, now) -> None:
        raw_signal.update(action="LONG", symbol="ethusdt")
        signal, _ = normalizer.normalize(raw_signal, now=now)

        assert signal.action == Action.BUY
        assert signal.symbol == "ETHUSDT"

    def test_missing_fields_are_all_reported(self, normalizer, raw_signal, now) -> None:
        del raw_signal["stop"]
        raw_signal["rr"] = ""

        with pytest.raises(SignalValidationError) as exc_info:
            normalizer.normalize(raw_signal, now=now)
        assert "Missing required field: stop" in exc_info.value.errors
        assert "Missing required field: rr" in exc_info.value.errors

    def test_buy_price_logic(self, normalizer, raw_signal, now) -> None:
        raw_signal.update(target=44000, stop=46000)

        result = normalizer.validate(raw_signal, now=now)
        assert "Buy signal: target must be above entry" in result.errors
        assert "Buy signal: stop must be below entry" in result.errors

    def test_sell_price_logic(self, normalizer, raw_signal, now) -> None:
        raw_signal.update(action="sell", target=44000, stop=46000)

        signal, _ = normalizer.normalize(raw_signal, now=now)
        assert signal.action == Action.SELL

    def test_stale_signal_is_rejected(self, normalizer, raw_signal, now) -> None:
        raw_signal["time"] = "2024-01-08T12:00:00Z"

        result = normalizer.validate(raw_signal, now=now)
        assert any("hours old" in e for e in result.errors)

    def test_old_signal_warns(self, normalizer, raw_signal, now) -> None:
        raw_signal["time"] = "2024-01-10T09:00:00Z"

        _, warnings = normalizer.normalize(raw_signal, now=now)
        assert any("hours old" in w for w in warnings)

    def test_soft_ranges_warn(self, normalizer, raw_signal, now) -> None:
        raw_signal.update(rr=20, risk=8, timeframe="60")

        _, warnings = normalizer.normalize(raw_signal, now=now)
        assert any("Risk-reward" in w for w in warnings)
        assert any("Risk 8%" in w for w in warnings)
        assert "Timeframe '60' normalized to '1h'" in warnings

    def test_non_numeric_price(self, normalizer, raw_signal, now) -> None:
        raw_signal["entry"] = "abc"

        result = normalizer.validate(raw_signal, now=now)
        assert "Field 'entry' must be numeric" in result.errors


class TestIdempotence:
    def test_processed_id_is_duplicate(self, normalizer, raw_signal, now) -> None:
        normalizer.normalize(raw_signal, now=now)
        normalizer.mark_processed(raw_signal["id"])

        with pytest.raises(DuplicateSignalError) as exc_info:
            normalizer.normalize(raw_signal, now=now)
        assert exc_info.value.external_id == "tv-001"

    def test_store_duplicate_flag(self, normalizer, raw_signal, now) -> None:
        with pytest.raises(DuplicateSignalError):
            normalizer.normalize(raw_signal, now=now, is_duplicate=True)

    def test_normalize_does_not_mark(self, normalizer, raw_signal, now) -> None:
        normalizer.normalize(raw_signal, now=now)
        assert not normalizer.is_processed("tv-001")

    def test_forget_allows_reprocessing(self, normalizer, raw_signal, now) -> None:
        normalizer.mark_processed("tv-001")
        normalizer.forget("tv-001")

        signal, _ = normalizer.normalize(raw_signal, now=now)
        assert signal.external_id == "tv-001"

    def test_memory_is_bounded(self) -> None:
        normalizer = SignalNormalizer(SignalSettings(dedup_memory_size=2))

        for external_id in ("tv-001", "tv-002", "tv-003"):
            normalizer.mark_processed(external_id)

        assert not normalizer.is_processed("tv-001")
        assert normalizer.is_processed("tv-002")
        assert normalizer.is_processed("tv-003")

    def test_remarking_refreshes_id(self) -> None:
        normalizer = SignalNormalizer(SignalSettings(dedup_memory_size=2))
        normalizer.mark_processed("tv-001")
        normalizer.mark_processed("tv-002")

        normalizer.mark_processed("tv-001")
        normalizer.mark_processed("tv-003")

        assert normalizer.is_processed("tv-001")
        assert not normalizer.is_processed("tv-002")


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [("1", "1m"), ("240", "4h"), ("D", "1d"), ("1W", "1w"), ("45", "45m"), ("4H", "4h")],
    )
    def test_normalize_timeframe(self, raw: str, expected: str) -> None:
        canonical, _ = normalize_timeframe(raw)
        assert canonical == expected

    def test_canonical_timeframe_has_no_warning(self) -> None:
        assert normalize_timeframe("15m") == ("15m", None)

    def test_invalid_timeframe(self) -> None:
        assert normalize_timeframe("weekly") == (None, None)

    def test_parse_unix_seconds_and_millis(self) -> None:
        expected = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
        assert parse_signal_time(1704888000) == expected
        assert parse_signal_time("1704888000000") == expected

    def test_parse_naive_iso_is_utc(self) -> None:
        parsed = parse_signal_time("2024-01-10T12:00:00")
        assert parsed.tzinfo is not None
        assert parsed.hour == 12

    def test_parse_garbage(self) -> None:
        assert parse_signal_time("yesterday") is None
