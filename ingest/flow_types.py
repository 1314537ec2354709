"""Immutable records for stream flow events and backend snapshot state."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


class EventKind(Enum):
    TRADE = "TRADE"
    PRINT = "PRINT"


class Direction(Enum):
    BTO = "BTO"
    BTC = "BTC"
    STO = "STO"
    STC = "STC"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "Direction":
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_buy(self) -> bool:
        return self in (Direction.BTO, Direction.BTC)


class PositionStatus:
    OPEN = "OPEN"
    CLOSED = "CLOSED"


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce a wire value to a finite float, falling back on ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def to_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    number = to_float(value, default=math.nan)
    return None if math.isnan(number) else number


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _status(value: Any) -> Optional[str]:
    # No status means neither open nor closed
    status = _optional_str(value)
    return (status.strip().upper() or None) if status else None


@dataclass(frozen=True)
class Greeks:
    delta: Optional[float] = None
    gamma: Optional[float] = None
    theta: Optional[float] = None
    implied_vol: Optional[float] = None

    @classmethod
    def from_wire(cls, payload: Any) -> Optional["Greeks"]:
        if not isinstance(payload, Mapping):
            return None
        return cls(
            delta=to_optional_float(payload.get("delta")),
            gamma=to_optional_float(payload.get("gamma")),
            theta=to_optional_float(_first(payload, "theta")),
            implied_vol=to_optional_float(_first(payload, "iv", "impliedVol", "implied_vol")),
        )

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {
            "delta": self.delta,
            "gamma": self.gamma,
            "theta": self.theta,
            "impliedVol": self.implied_vol,
        }


@dataclass(frozen=True)
class FlowEvent:
    """A single classified options/equity trade or print."""

    event_kind: EventKind
    symbol: Optional[str] = None
    direction: Direction = Direction.UNKNOWN
    size: float = 0.0
    premium: float = 0.0
    strike: Optional[float] = None
    option_type: Optional[str] = None
    stance_score: float = 0.0
    stance_label: str = "NEUTRAL"
    confidence: float = 0.0
    classifications: frozenset = field(default_factory=frozenset)
    volume_over_open_interest: Optional[float] = None
    greeks: Optional[Greeks] = None
    timestamp: Optional[Any] = None
    conid: Optional[str] = None
    sequence: int = 0
    received_at: float = field(default_factory=time.time)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any], event_kind: EventKind, sequence: int = 0) -> "FlowEvent":
        raw_tags = payload.get("classifications") or ()
        if isinstance(raw_tags, str):
            raw_tags = (raw_tags,)
        tags = frozenset(str(tag).upper() for tag in raw_tags if tag) if isinstance(raw_tags, Iterable) else frozenset()
        return cls(
            event_kind=event_kind,
            symbol=_optional_str(payload.get("symbol")),
            direction=Direction.parse(payload.get("direction")),
            size=to_float(_first(payload, "size", "tradeSize")),
            premium=to_float(payload.get("premium")),
            strike=to_optional_float(payload.get("strike")),
            option_type=_optional_str(_first(payload, "optionType", "right")),
            stance_score=to_float(payload.get("stanceScore")),
            stance_label=str(payload.get("stanceLabel") or "NEUTRAL"),
            confidence=to_float(payload.get("confidence")),
            classifications=tags,
            volume_over_open_interest=to_optional_float(
                _first(payload, "volOiRatio", "volumeOverOpenInterest")
            ),
            greeks=Greeks.from_wire(payload.get("greeks")),
            timestamp=payload.get("timestamp") or None,
            conid=_optional_str(payload.get("conid")),
            sequence=sequence,
        )

    @property
    def is_sweep(self) -> bool:
        return "SWEEP" in self.classifications

    @property
    def is_block(self) -> bool:
        return "BLOCK" in self.classifications

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.event_kind.value,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "size": self.size,
            "premium": self.premium,
            "strike": self.strike,
            "optionType": self.option_type,
            "stanceScore": self.stance_score,
            "stanceLabel": self.stance_label,
            "confidence": self.confidence,
            "classifications": sorted(self.classifications),
            "volOiRatio": self.volume_over_open_interest,
            "timestamp": self.timestamp,
            "conid": self.conid,
            "sequence": self.sequence,
        }
        if self.greeks is not None:
            data["greeks"] = self.greeks.as_dict()
        return data


@dataclass(frozen=True)
class Position:
    """Backend-owned position; replaced wholesale on every snapshot."""

    symbol: Optional[str] = None
    option_type: Optional[str] = None
    strike: Optional[float] = None
    side: Optional[str] = None
    contracts: float = 0.0
    entry_price: Optional[float] = None
    current_price: Optional[float] = None
    profit_target: Optional[float] = None
    status: Optional[str] = None
    pnl: Optional[float] = None
    dollar_pnl: Optional[float] = None

    @classmethod
    def from_wire(cls, payload: Any) -> Optional["Position"]:
        if not isinstance(payload, Mapping):
            return None
        return cls(
            symbol=_optional_str(payload.get("symbol")),
            option_type=_optional_str(_first(payload, "type", "optionType", "right")),
            strike=to_optional_float(payload.get("strike")),
            side=_optional_str(payload.get("side")),
            contracts=to_float(payload.get("contracts")),
            entry_price=to_optional_float(_first(payload, "entry", "entryPrice")),
            current_price=to_optional_float(_first(payload, "current", "currentPrice")),
            profit_target=to_optional_float(payload.get("profitTarget")),
            status=_status(payload.get("status")),
            pnl=to_optional_float(payload.get("pnl")),
            dollar_pnl=to_optional_float(payload.get("dollarPnl")),
        )

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "type": self.option_type,
            "strike": self.strike,
            "side": self.side,
            "contracts": self.contracts,
            "entry": self.entry_price,
            "current": self.current_price,
            "profitTarget": self.profit_target,
            "status": self.status,
            "pnl": self.pnl,
            "dollarPnl": self.dollar_pnl,
        }


@dataclass(frozen=True)
class SignalSummary:
    count: int = 0
    avg_stance: float = 0.0

    @classmethod
    def from_wire(cls, payload: Any) -> Optional["SignalSummary"]:
        if not isinstance(payload, Mapping):
            return None
        return cls(
            count=int(to_float(payload.get("count"))),
            avg_stance=to_float(payload.get("avgStance")),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "avgStance": self.avg_stance}


def _positions(raw: Any) -> Tuple[Position, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    parsed = (Position.from_wire(item) for item in raw)
    return tuple(pos for pos in parsed if pos is not None)


@dataclass(frozen=True)
class Snapshot:
    """Authoritative backend state as of one status request."""

    enabled: bool = False
    positions: Tuple[Position, ...] = ()
    signals: Mapping[str, SignalSummary] = field(default_factory=lambda: MappingProxyType({}))
    recent_orders: Tuple[Position, ...] = ()
    sequence: int = 0
    fetched_at: Optional[float] = None

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any], sequence: int = 0) -> "Snapshot":
        raw_signals = payload.get("signals")
        signals: Dict[str, SignalSummary] = {}
        if isinstance(raw_signals, Mapping):
            for symbol, summary in raw_signals.items():
                parsed = SignalSummary.from_wire(summary)
                if parsed is not None:
                    signals[str(symbol)] = parsed
        return cls(
            enabled=payload.get("enabled") is True,
            positions=_positions(payload.get("positions")),
            signals=MappingProxyType(signals),
            recent_orders=_positions(payload.get("recentOrders")),
            sequence=sequence,
            fetched_at=time.time(),
        )
