"""Shared data models for the decision tree trading engine.

CRITICAL: All monetary values use Decimal. Never use float for prices, stakes, or costs.
Timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Action(str, Enum):
    """Trade direction."""

    BUY = "buy"
    SELL = "sell"


class Outcome(str, Enum):
    """Resolved result of a trade."""

    WIN = "win"
    LOSS = "loss"


class ExitReason(str, Enum):
    """Why a trade left the market, as reported by the outcome callback."""

    TARGET_REACHED = "target_reached"
    STOP_REACHED = "stop_reached"
    MANUAL_CLOSE = "manual_close"
    PARTIAL_FILL = "partial_fill"


class StepAction(str, Enum):
    """Kind of entry recorded in a session's path history."""

    EXECUTE = "execute"
    WIN = "win"
    LOSS = "loss"
    ROLLBACK = "rollback"


class ExecutionStatus(str, Enum):
    """Final status of an order submission."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RegistrationStatus(str, Enum):
    """Lifecycle of an overnight registration. Never re-opened once left."""

    ACTIVE = "active"
    CLOSED = "closed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class TradeSignal:
    """Normalized inbound signal. Immutable once accepted."""

    action: Action
    symbol: str
    timeframe: str
    entry: Decimal
    target: Decimal
    stop: Decimal
    external_id: str
    risk_reward: Decimal
    risk_percent: Decimal
    signal_time: datetime
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class PathStep:
    """One entry of a session's path history.

    ``from_node_id`` is the node the session sat on before the step and
    ``node_id`` the node it sits on after. Execute steps leave the node
    unchanged and carry a zero signed result.
    """

    step_number: int
    from_node_id: str
    node_id: str
    action: StepAction
    stake_applied: Decimal
    signed_result: Decimal
    timestamp: datetime = field(default_factory=utcnow)
    note: str = ""
    trade_id: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "from_node_id": self.from_node_id,
            "node_id": self.node_id,
            "action": self.action.value,
            "stake_applied": str(self.stake_applied),
            "signed_result": str(self.signed_result),
            "timestamp": self.timestamp.isoformat(),
            "note": self.note,
            "trade_id": self.trade_id,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PathStep":
        return cls(
            step_number=int(data["step_number"]),
            from_node_id=data["from_node_id"],
            node_id=data["node_id"],
            action=StepAction(data["action"]),
            stake_applied=_dec(data["stake_applied"]),
            signed_result=_dec(data["signed_result"]),
            timestamp=_ts(data["timestamp"]) or utcnow(),
            note=data.get("note") or "",
            trade_id=data.get("trade_id"),
            status=data.get("status"),
        )


@dataclass
class OpenTrade:
    """The single unresolved trade a session is waiting on."""

    trade_id: str
    external_id: str
    symbol: str
    action: Action
    node_id: str
    entry: Decimal
    target: Decimal
    stop: Decimal
    requested_stake: Decimal
    stake: Decimal  # filled amount, authoritative for P&L
    venue_order_id: str = ""
    opened_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "external_id": self.external_id,
            "symbol": self.symbol,
            "action": self.action.value,
            "node_id": self.node_id,
            "entry": str(self.entry),
            "target": str(self.target),
            "stop": str(self.stop),
            "requested_stake": str(self.requested_stake),
            "stake": str(self.stake),
            "venue_order_id": self.venue_order_id,
            "opened_at": self.opened_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OpenTrade":
        return cls(
            trade_id=data["trade_id"],
            external_id=data["external_id"],
            symbol=data["symbol"],
            action=Action(data["action"]),
            node_id=data["node_id"],
            entry=_dec(data["entry"]),
            target=_dec(data["target"]),
            stop=_dec(data["stop"]),
            requested_stake=_dec(data["requested_stake"]),
            stake=_dec(data["stake"]),
            venue_order_id=data.get("venue_order_id") or "",
            opened_at=_ts(data.get("opened_at")) or utcnow(),
        )


@dataclass
class Session:
    """A walk through the decision tree for one symbol.

    Invariant: ``running_total`` always equals the sum of ``signed_result``
    over ``path_history``.
    """

    session_id: str
    symbol: str
    current_node_id: str
    initial_capital: Decimal
    name: str = ""
    running_total: Decimal = Decimal("0")
    path_history: list[PathStep] = field(default_factory=list)
    completed: bool = False
    requires_manual_confirmation: bool = False
    blocked_reason: str = ""
    notes: list[str] = field(default_factory=list)
    open_trade: OpenTrade | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def last_step(self) -> PathStep | None:
        return self.path_history[-1] if self.path_history else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "symbol": self.symbol,
            "name": self.name,
            "current_node_id": self.current_node_id,
            "initial_capital": str(self.initial_capital),
            "running_total": str(self.running_total),
            "path_history": [step.to_dict() for step in self.path_history],
            "completed": self.completed,
            "requires_manual_confirmation": self.requires_manual_confirmation,
            "blocked_reason": self.blocked_reason,
            "notes": list(self.notes),
            "open_trade": self.open_trade.to_dict() if self.open_trade else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        open_trade = data.get("open_trade")
        return cls(
            session_id=data["session_id"],
            symbol=data["symbol"],
            name=data.get("name") or "",
            current_node_id=data["current_node_id"],
            initial_capital=_dec(data["initial_capital"]),
            running_total=_dec(data["running_total"]),
            path_history=[PathStep.from_dict(s) for s in data.get("path_history", [])],
            completed=bool(data.get("completed", False)),
            requires_manual_confirmation=bool(
                data.get("requires_manual_confirmation", False)
            ),
            blocked_reason=data.get("blocked_reason") or "",
            notes=list(data.get("notes") or []),
            open_trade=OpenTrade.from_dict(open_trade) if open_trade else None,
            created_at=_ts(data.get("created_at")) or utcnow(),
            updated_at=_ts(data.get("updated_at")) or utcnow(),
        )


@dataclass
class OrderRequest:
    """Request to open a position worth ``amount`` in quote currency."""

    symbol: str
    action: Action
    amount: Decimal  # notional stake
    quantity: Decimal  # base units at reference_price
    reference_price: Decimal
    client_order_id: str = ""


@dataclass
class VenueFill:
    """Raw fill reported by a venue."""

    order_id: str
    price: Decimal
    quantity: Decimal
    fee: Decimal = Decimal("0")
    is_simulated: bool = False


@dataclass
class ExecutionResult:
    """Outcome of submitting an order, after retries."""

    status: ExecutionStatus
    venue_order_id: str = ""
    actual_price: Decimal = Decimal("0")
    actual_quantity: Decimal = Decimal("0")
    filled_amount: Decimal = Decimal("0")
    attempts: int = 0
    partial_fill: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


@dataclass(frozen=True)
class TradeOutcome:
    """Validated outcome callback."""

    trade_id: str
    session_id: str
    result: Outcome
    exit_price: Decimal
    profit_loss: Decimal
    exit_reason: ExitReason
    exited_at: datetime
    venue_order_id: str | None = None
    actual_quantity: Decimal | None = None
    fees: Decimal | None = None
    slippage: Decimal | None = None


@dataclass
class OvernightRegistration:
    """A trade watched by the overnight guardian."""

    trade_id: str
    session_id: str
    symbol: str
    action: Action
    entry: Decimal
    target: Decimal
    stop: Decimal
    stake_amount: Decimal
    node_id: str
    previous_node_id: str
    overnight_close_enabled: bool = True
    status: RegistrationStatus = RegistrationStatus.ACTIVE
    registered_at: datetime = field(default_factory=utcnow)
    closed_at: datetime | None = None
    close_reason: str | None = None
    close_price: Decimal | None = None
    realized_pnl: Decimal | None = None
    rollback_pending: bool = False  # closed at venue, session rollback not yet applied


@dataclass
class ValidationResult:
    """Errors reject a signal, warnings are attached and logged."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class PartialFillResult:
    """Computed when a venue fills less (or more) than requested."""

    original_amount: Decimal
    filled_amount: Decimal
    fill_percentage: Decimal
    remaining_amount: Decimal


class AlertType(str, Enum):
    """Kinds of health alerts."""

    SIGNAL_DELAY = "SIGNAL_DELAY"
    VENUE_UNRESPONSIVE = "VENUE_UNRESPONSIVE"
    STAKE_ABNORMAL = "STAKE_ABNORMAL"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class AlertSeverity(str, Enum):
    """Alert severity, lowest first."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class Alert:
    """A raised health alert."""

    alert_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
