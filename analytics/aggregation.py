"""Pure derivations over the flow buffer and the latest position snapshot.

Every function recomputes from its inputs; nothing is cached between calls.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from ingest.flow_types import FlowEvent, Position, SignalSummary, Snapshot, to_float


BULLISH_THRESHOLD = 30.0
BEARISH_THRESHOLD = -30.0
UNKNOWN_SYMBOL = "UNKNOWN"

BULLISH = "bullish"
BEARISH = "bearish"
NEUTRAL = "neutral"


@dataclass(frozen=True)
class SymbolSentiment:
    bullish: int = 0
    bearish: int = 0
    neutral: int = 0

    @property
    def total(self) -> int:
        return self.bullish + self.bearish + self.neutral


@dataclass(frozen=True)
class DerivedStats:
    total_pnl: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    open_positions: int = 0


@dataclass(frozen=True)
class PnlPoint:
    trade: int
    pnl: float
    cumulative: float


@dataclass(frozen=True)
class SignalBoardEntry:
    symbol: str
    count: int
    avg_stance: float
    stance: str
    has_signal: bool


@dataclass(frozen=True)
class OpenPositionRow:
    key: str
    position: Position
    pnl_pct: float
    progress: float


@dataclass(frozen=True)
class AggregationView:
    sentiment: Mapping[str, SymbolSentiment]
    stats: DerivedStats
    pnl_series: Tuple[PnlPoint, ...]
    signal_board: Tuple[SignalBoardEntry, ...]
    open_rows: Tuple[OpenPositionRow, ...]


def classify_stance(
    score: float,
    bullish_threshold: float = BULLISH_THRESHOLD,
    bearish_threshold: float = BEARISH_THRESHOLD,
) -> str:
    # Strict comparisons: a score sitting exactly on a threshold is neutral
    score = to_float(score)
    if score > bullish_threshold:
        return BULLISH
    if score < bearish_threshold:
        return BEARISH
    return NEUTRAL


def compute_sentiment(
    flows: Iterable[FlowEvent],
    bullish_threshold: float = BULLISH_THRESHOLD,
    bearish_threshold: float = BEARISH_THRESHOLD,
) -> Dict[str, SymbolSentiment]:
    """Bullish/bearish/neutral counts per symbol, in first-seen order."""
    counts: Dict[str, Dict[str, int]] = {}
    for flow in flows:
        symbol = flow.symbol or UNKNOWN_SYMBOL
        bucket = counts.setdefault(symbol, {BULLISH: 0, BEARISH: 0, NEUTRAL: 0})
        bucket[classify_stance(flow.stance_score, bullish_threshold, bearish_threshold)] += 1
    return {symbol: SymbolSentiment(**bucket) for symbol, bucket in counts.items()}


def _trade_result(position: Position) -> float:
    if position.pnl is not None:
        return position.pnl
    return to_float(position.dollar_pnl)


def compute_stats(
    positions: Sequence[Position],
    open_positions: Optional[Sequence[Position]] = None,
) -> DerivedStats:
    """Closed-trade stats from ``positions``; open count from ``open_positions`` if given."""
    closed = [p for p in positions if p.is_closed]
    wins = sum(1 for p in closed if _trade_result(p) > 0)
    total_pnl = sum(to_float(p.dollar_pnl) for p in closed)
    open_source = positions if open_positions is None else open_positions
    return DerivedStats(
        total_pnl=total_pnl,
        win_rate=(wins / len(closed)) * 100.0 if closed else 0.0,
        total_trades=len(closed),
        open_positions=sum(1 for p in open_source if p.is_open),
    )


def compute_pnl_series(positions: Sequence[Position]) -> Tuple[PnlPoint, ...]:
    """Running dollar P&L over closed positions, kept in snapshot order."""
    series = []
    cumulative = 0.0
    for index, position in enumerate(p for p in positions if p.is_closed):
        pnl = to_float(position.dollar_pnl)
        cumulative += pnl
        series.append(PnlPoint(trade=index + 1, pnl=pnl, cumulative=cumulative))
    return tuple(series)


def compute_signal_board(
    signals: Mapping[str, SignalSummary],
    symbols: Sequence[str],
    bullish_threshold: float = BULLISH_THRESHOLD,
    bearish_threshold: float = BEARISH_THRESHOLD,
) -> Tuple[SignalBoardEntry, ...]:
    board = []
    for symbol in symbols:
        summary = signals.get(symbol)
        if summary is None:
            board.append(SignalBoardEntry(symbol, 0, 0.0, NEUTRAL, False))
            continue
        board.append(
            SignalBoardEntry(
                symbol=symbol,
                count=summary.count,
                avg_stance=summary.avg_stance,
                stance=classify_stance(summary.avg_stance, bullish_threshold, bearish_threshold),
                has_signal=True,
            )
        )
    return tuple(board)


def position_pnl_pct(position: Position) -> float:
    entry = position.entry_price
    current = position.current_price
    if not entry or not current:
        return 0.0
    return (current - entry) / entry * 100.0


def _format_strike(strike: Optional[float]) -> str:
    return "" if strike is None else f"{strike:g}"


def compute_open_positions(positions: Sequence[Position]) -> Tuple[OpenPositionRow, ...]:
    rows = []
    for index, position in enumerate(p for p in positions if p.is_open):
        pnl_pct = position_pnl_pct(position)
        rows.append(
            OpenPositionRow(
                key=f"{position.symbol}-{_format_strike(position.strike)}-{index}",
                position=position,
                pnl_pct=pnl_pct,
                progress=min(abs(pnl_pct) * 2.0, 100.0),
            )
        )
    return tuple(rows)


class AggregationEngine:
    """Binds thresholds and the watchlist; holds no derived state."""

    def __init__(
        self,
        bullish_threshold: float = BULLISH_THRESHOLD,
        bearish_threshold: float = BEARISH_THRESHOLD,
        watchlist: Sequence[str] = (),
    ):
        if bearish_threshold > bullish_threshold:
            raise ValueError(
                f"bearish threshold {bearish_threshold} is above bullish threshold {bullish_threshold}"
            )
        self.bullish_threshold = float(bullish_threshold)
        self.bearish_threshold = float(bearish_threshold)
        self.watchlist = tuple(watchlist)

    def compute(self, flows: Sequence[FlowEvent], snapshot: Snapshot) -> AggregationView:
        # Closed-trade stats come from recentOrders, open counts and rows from positions
        return AggregationView(
            sentiment=MappingProxyType(
                compute_sentiment(flows, self.bullish_threshold, self.bearish_threshold)
            ),
            stats=compute_stats(snapshot.recent_orders, snapshot.positions),
            pnl_series=compute_pnl_series(snapshot.positions),
            signal_board=compute_signal_board(
                snapshot.signals, self.watchlist, self.bullish_threshold, self.bearish_threshold
            ),
            open_rows=compute_open_positions(snapshot.positions),
        )
