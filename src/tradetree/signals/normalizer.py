"""Signal intake: validates and canonicalizes inbound trade signals.

Errors reject the signal and are never retried. Warnings are attached to
the accepted signal and logged. The external id is the idempotency key:
an id that has already been processed is rejected, not merged.

Inbound shape (charting platform webhook)::

    {"action": "buy", "symbol": "BTCUSDT", "timeframe": "15",
     "time": "2024-01-01T12:00:00Z", "entry": 45000, "target": 46000,
     "stop": 44500, "id": "tv-123", "rr": 2, "risk": 1}
"""

import re
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from tradetree.config import SignalSettings
from tradetree.exceptions import DuplicateSignalError, SignalValidationError
from tradetree.logging import get_logger
from tradetree.models import Action, TradeSignal, ValidationResult, utcnow

logger = get_logger(__name__)

REQUIRED_FIELDS = (
    "action",
    "symbol",
    "timeframe",
    "time",
    "entry",
    "target",
    "stop",
    "id",
    "rr",
    "risk",
)

ACTION_ALIASES: dict[str, Action] = {
    "buy": Action.BUY,
    "long": Action.BUY,
    "sell": Action.SELL,
    "short": Action.SELL,
}

# Minutes -> canonical form, as sent by the charting platform
TIMEFRAME_MAP: dict[str, str] = {
    "1": "1m",
    "5": "5m",
    "15": "15m",
    "30": "30m",
    "60": "1h",
    "240": "4h",
    "1440": "1d",
    "10080": "1w",
    "D": "1d",
    "1D": "1d",
    "W": "1w",
    "1W": "1w",
}

_CANONICAL_TIMEFRAME = re.compile(r"^\d+[mhdw]$")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def parse_signal_time(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or a unix timestamp (seconds or ms) to UTC."""
    number = _to_decimal(value)
    if number is not None:
        seconds = number / 1000 if number > Decimal("1e11") else number
        try:
            return datetime.fromtimestamp(float(seconds), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timeframe(raw: str) -> tuple[str | None, str | None]:
    """Map a timeframe to its canonical ``<n><unit>`` form.

    Returns:
        Tuple of (canonical timeframe or None when invalid, warning or None).
    """
    text = str(raw).strip()
    if text in TIMEFRAME_MAP:
        canonical = TIMEFRAME_MAP[text]
        return canonical, f"Timeframe '{text}' normalized to '{canonical}'"
    if text.isdigit() and int(text) > 0:
        canonical = f"{int(text)}m"
        return canonical, f"Timeframe '{text}' normalized to '{canonical}'"
    lowered = text.lower()
    if _CANONICAL_TIMEFRAME.match(lowered):
        if lowered != text:
            return lowered, f"Timeframe '{text}' normalized to '{lowered}'"
        return lowered, None
    return None, None


class SignalNormalizer:
    """Validates raw signal payloads and converts them to TradeSignal.

    Remembers the most recent processed external ids (bounded by
    ``dedup_memory_size``, oldest evicted first). The durable store is the
    authority: the workflow checks it and passes the result as
    ``is_duplicate``.

    Args:
        settings: Age, risk-reward, risk-percent and price-range thresholds.
    """

    def __init__(self, settings: SignalSettings) -> None:
        self._settings = settings
        self._processed: OrderedDict[str, None] = OrderedDict()

    def is_processed(self, external_id: str) -> bool:
        return external_id in self._processed

    def mark_processed(self, external_id: str) -> None:
        self._processed[external_id] = None
        self._processed.move_to_end(external_id)
        while len(self._processed) > self._settings.dedup_memory_size:
            self._processed.popitem(last=False)

    def forget(self, external_id: str) -> None:
        """Allow an id to be processed again (used when intake fails before commit)."""
        self._processed.pop(external_id, None)

    def validate(
        self,
        raw: dict[str, Any],
        now: datetime | None = None,
        is_duplicate: bool = False,
    ) -> ValidationResult:
        """Check a raw payload without accepting it.

        Args:
            raw: Decoded JSON payload.
            now: Reference time for age checks, current time when None.
            is_duplicate: Whether the store already knows the external id.

        Returns:
            ValidationResult with itemized errors and warnings.
        """
        result = ValidationResult()
        now = now or utcnow()

        missing = [name for name in REQUIRED_FIELDS if _is_blank(raw.get(name))]
        for name in missing:
            result.errors.append(f"Missing required field: {name}")

        action = str(raw.get("action", "")).strip().lower()
        if "action" not in missing and action not in ACTION_ALIASES:
            result.errors.append(
                f"Invalid action '{raw.get('action')}'; expected buy, sell, long or short"
            )

        if "timeframe" not in missing:
            canonical, warning = normalize_timeframe(raw["timeframe"])
            if canonical is None:
                result.errors.append(f"Invalid timeframe '{raw['timeframe']}'")
            elif warning:
                result.warnings.append(warning)

        prices: dict[str, Decimal] = {}
        for name in ("entry", "target", "stop"):
            if name in missing:
                continue
            value = _to_decimal(raw[name])
            if value is None:
                result.errors.append(f"Field '{name}' must be numeric")
            elif value <= 0:
                result.errors.append(f"Field '{name}' must be positive")
            else:
                prices[name] = value

        if len(prices) == 3 and action in ACTION_ALIASES:
            self._check_price_logic(ACTION_ALIASES[action], prices, result)

        if "rr" not in missing:
            rr = _to_decimal(raw["rr"])
            if rr is None:
                result.errors.append("Field 'rr' must be numeric")
            elif rr <= 0:
                result.errors.append("Risk-reward ratio must be positive")
            elif rr < self._settings.min_risk_reward or rr > self._settings.max_risk_reward:
                result.warnings.append(
                    f"Risk-reward ratio {rr} outside recommended range "
                    f"[{self._settings.min_risk_reward}, {self._settings.max_risk_reward}]"
                )

        if "risk" not in missing:
            risk = _to_decimal(raw["risk"])
            if risk is None:
                result.errors.append("Field 'risk' must be numeric")
            elif risk < self._settings.min_risk_percent or risk > self._settings.max_risk_percent:
                result.warnings.append(
                    f"Risk {risk}% outside recommended range "
                    f"[{self._settings.min_risk_percent}%, {self._settings.max_risk_percent}%]"
                )

        if "time" not in missing:
            signal_time = parse_signal_time(raw["time"])
            if signal_time is None:
                result.errors.append(f"Invalid signal time '{raw['time']}'")
            else:
                age_hours = (now - signal_time).total_seconds() / 3600
                if age_hours > self._settings.max_age_hours:
                    result.errors.append(
                        f"Signal is {age_hours:.1f} hours old "
                        f"(max {self._settings.max_age_hours:g}h)"
                    )
                elif age_hours > self._settings.notable_age_hours:
                    result.warnings.append(f"Signal is {age_hours:.1f} hours old")
                elif age_hours < -0.1:
                    result.warnings.append("Signal time is in the future")

        external_id = str(raw.get("id", "")).strip()
        if external_id and (is_duplicate or self.is_processed(external_id)):
            result.errors.append(f"Signal ID {external_id} already processed")

        return result

    def _check_price_logic(
        self,
        action: Action,
        prices: dict[str, Decimal],
        result: ValidationResult,
    ) -> None:
        entry, target, stop = prices["entry"], prices["target"], prices["stop"]
        if action == Action.BUY:
            if target <= entry:
                result.errors.append("Buy signal: target must be above entry")
            if stop >= entry:
                result.errors.append("Buy signal: stop must be below entry")
        else:
            if target >= entry:
                result.errors.append("Sell signal: target must be below entry")
            if stop <= entry:
                result.errors.append("Sell signal: stop must be above entry")

        price_range = abs(target - stop) / entry
        if price_range > self._settings.large_range_threshold:
            result.warnings.append(
                f"Large price range: {price_range * 100:.1f}% of entry"
            )

    def normalize(
        self,
        raw: dict[str, Any],
        now: datetime | None = None,
        is_duplicate: bool = False,
    ) -> tuple[TradeSignal, list[str]]:
        """Validate and convert a raw payload into a TradeSignal.

        Does not mark the id as processed; the workflow does that once the
        signal is committed.

        Returns:
            Tuple of (signal, warnings).

        Raises:
            DuplicateSignalError: If the external id was already processed.
            SignalValidationError: If any hard check fails.
        """
        result = self.validate(raw, now=now, is_duplicate=is_duplicate)
        external_id = str(raw.get("id", "")).strip()
        if external_id and (is_duplicate or self.is_processed(external_id)):
            logger.info("duplicate_signal_rejected", external_id=external_id)
            raise DuplicateSignalError(external_id)
        if not result.is_valid:
            logger.warning(
                "signal_rejected",
                external_id=external_id or None,
                errors=result.errors,
            )
            raise SignalValidationError(result.errors, result.warnings)

        timeframe, _ = normalize_timeframe(raw["timeframe"])
        signal_time = parse_signal_time(raw["time"])
        assert timeframe is not None and signal_time is not None

        signal = TradeSignal(
            action=ACTION_ALIASES[str(raw["action"]).strip().lower()],
            symbol=str(raw["symbol"]).strip().upper(),
            timeframe=timeframe,
            entry=Decimal(str(raw["entry"]).strip()),
            target=Decimal(str(raw["target"]).strip()),
            stop=Decimal(str(raw["stop"]).strip()),
            external_id=external_id,
            risk_reward=Decimal(str(raw["rr"]).strip()),
            risk_percent=Decimal(str(raw["risk"]).strip()),
            signal_time=signal_time,
            received_at=now or utcnow(),
        )
        if result.warnings:
            logger.info(
                "signal_accepted_with_warnings",
                external_id=external_id,
                warnings=result.warnings,
            )
        return signal, result.warnings
