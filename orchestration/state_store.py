import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from analytics.aggregation import (
    AggregationEngine,
    DerivedStats,
    OpenPositionRow,
    PnlPoint,
    SignalBoardEntry,
    SymbolSentiment,
)
from analytics.flow_buffer import DEFAULT_CAPACITY, FlowBuffer
from api.metrics import metrics
from config import config
from config.utils import get_config_section
from ingest.flow_api import CommandRejected, FetchFailed, FlowAPIClient, FlowAPIError
from ingest.flow_types import FlowEvent, Position, SignalSummary, Snapshot
from ingest.messages import FlowEventMessage, StreamMessage, TradeLifecycleMessage
from ingest.snapshot_fetcher import SnapshotFetcher
from ingest.websocket_client import ConnectionManager, ConnectionStatus
from monitoring.async_utils import run_tasks_with_cleanup, track_task


logger = logging.getLogger(__name__)

Subscriber = Callable[["ReadModel"], None]

SIMULATE_SIDES = {
    'BULL': 'BULL',
    'BULLISH': 'BULL',
    'BEAR': 'BEAR',
    'BEARISH': 'BEAR',
}


@dataclass(frozen=True)
class ReadModel:
    """Everything the view layer reads, built in one step after each mutation."""

    version: int
    status: ConnectionStatus
    enabled: bool
    flows: Tuple[FlowEvent, ...]
    flow_keys: Tuple[str, ...]
    positions: Tuple[Position, ...]
    recent_orders: Tuple[Position, ...]
    signals: Mapping[str, SignalSummary]
    sentiment: Mapping[str, SymbolSentiment]
    stats: DerivedStats
    pnl_series: Tuple[PnlPoint, ...]
    signal_board: Tuple[SignalBoardEntry, ...]
    open_rows: Tuple[OpenPositionRow, ...]
    snapshot_sequence: int
    last_fetch_error: Optional[str]
    last_command_error: Optional[str]
    updated_at: float

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'status': self.status.value,
            'connected': self.connected,
            'enabled': self.enabled,
            'flows': [
                {'key': key, **flow.as_dict()} for key, flow in zip(self.flow_keys, self.flows)
            ],
            'positions': [p.as_dict() for p in self.positions],
            'recentOrders': [p.as_dict() for p in self.recent_orders],
            'signals': {symbol: s.as_dict() for symbol, s in self.signals.items()},
            'stats': {
                'totalPnL': self.stats.total_pnl,
                'winRate': self.stats.win_rate,
                'totalTrades': self.stats.total_trades,
                'openPositions': self.stats.open_positions,
            },
            'sentiment': [
                {'symbol': symbol, 'bullish': s.bullish, 'bearish': s.bearish, 'neutral': s.neutral}
                for symbol, s in self.sentiment.items()
            ],
            'pnlSeries': [
                {'trade': p.trade, 'pnl': p.pnl, 'cumulative': p.cumulative} for p in self.pnl_series
            ],
            'signalBoard': [
                {
                    'symbol': e.symbol,
                    'count': e.count,
                    'avgStance': e.avg_stance,
                    'stance': e.stance,
                    'hasSignal': e.has_signal,
                }
                for e in self.signal_board
            ],
            'openPositions': [
                {'key': r.key, 'pnlPct': r.pnl_pct, 'progress': r.progress, **r.position.as_dict()}
                for r in self.open_rows
            ],
            'snapshotSequence': self.snapshot_sequence,
            'lastFetchError': self.last_fetch_error,
            'lastCommandError': self.last_command_error,
            'updatedAt': self.updated_at,
        }


class StateStore:
    """Single owner of stream, buffer and snapshot state; publishes a ReadModel per change."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        connection: Optional[ConnectionManager] = None,
        fetcher: Optional[SnapshotFetcher] = None,
        api_client: Optional[FlowAPIClient] = None,
    ):
        cfg = config_obj if config_obj is not None else config
        flow_cfg = get_config_section(cfg, 'flow')

        self.api_client = api_client or (fetcher.client if fetcher is not None else FlowAPIClient(cfg))
        self.fetcher = fetcher or SnapshotFetcher(self.api_client, cfg)
        self.connection = connection or ConnectionManager(cfg)
        self.buffer = FlowBuffer(flow_cfg.get('buffer_capacity', DEFAULT_CAPACITY))
        self.engine = AggregationEngine(
            bullish_threshold=flow_cfg.get('bullish_threshold', 30),
            bearish_threshold=flow_cfg.get('bearish_threshold', -30),
            watchlist=self.connection.equity_symbols,
        )

        self.snapshot = Snapshot()
        self.status = self.connection.status
        self.last_fetch_error: Optional[str] = None
        self.last_command_error: Optional[str] = None
        self.running = False

        self._subscribers: List[Subscriber] = []
        self._pending_refreshes: Set[asyncio.Task] = set()
        self._version = 0
        self._read_model = self._build_read_model()

        self.connection.register_handler('status', self.handle_status)
        self.connection.register_handler('message', self.handle_message)

    @property
    def read_model(self) -> ReadModel:
        return self._read_model

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; it receives the current model now and on every change."""
        self._subscribers.append(callback)
        self._notify(callback, self._read_model)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, callback: Subscriber, model: ReadModel):
        try:
            callback(model)
        except Exception:
            logger.exception("State subscriber %r failed", callback)

    def _build_read_model(self) -> ReadModel:
        flows = self.buffer.snapshot()
        view = self.engine.compute(flows, self.snapshot)
        return ReadModel(
            version=self._version,
            status=self.status,
            enabled=self.snapshot.enabled,
            flows=flows,
            flow_keys=tuple(FlowBuffer.key_for(flow, i) for i, flow in enumerate(flows)),
            positions=self.snapshot.positions,
            recent_orders=self.snapshot.recent_orders,
            signals=self.snapshot.signals,
            sentiment=view.sentiment,
            stats=view.stats,
            pnl_series=view.pnl_series,
            signal_board=view.signal_board,
            open_rows=view.open_rows,
            snapshot_sequence=self.snapshot.sequence,
            last_fetch_error=self.last_fetch_error,
            last_command_error=self.last_command_error,
            updated_at=time.time(),
        )

    def _publish(self):
        self._version += 1
        model = self._build_read_model()
        self._read_model = model
        metrics.update_buffer_depth(len(model.flows))
        metrics.update_stats(model.stats.open_positions, model.stats.total_pnl, model.stats.win_rate)
        for callback in list(self._subscribers):
            self._notify(callback, model)

    async def handle_status(self, status: ConnectionStatus):
        self.status = status
        self._publish()

    async def handle_message(self, message: StreamMessage):
        try:
            if isinstance(message, FlowEventMessage):
                self.buffer.push(message.event)
                metrics.record_flow_event(message.event.event_kind.value)
                self._publish()
            elif isinstance(message, TradeLifecycleMessage):
                metrics.record_lifecycle_event(message.kind.value)
                logger.info("%s received; refreshing snapshot", message.kind.value)
                self.schedule_refresh()
            else:
                logger.warning("Ignoring unrecognised stream message %r", message)
        except Exception:
            logger.exception("Failed to apply stream message %r", message)

    def schedule_refresh(self) -> asyncio.Task:
        return track_task(self._pending_refreshes, self.refresh())

    async def refresh(self) -> bool:
        """Fetch and apply a snapshot; return True only if it became the current one."""
        try:
            snapshot = await self.fetcher.fetch_snapshot()
        except asyncio.CancelledError:
            raise
        except FetchFailed as exc:
            metrics.record_snapshot_fetch('failed')
            if exc.sequence is not None and exc.sequence <= self.snapshot.sequence:
                logger.info(
                    "Snapshot request #%s failed after #%s was applied; ignoring: %s",
                    exc.sequence,
                    self.snapshot.sequence,
                    exc,
                )
                return False
            self.last_fetch_error = str(exc)
            logger.warning("Snapshot refresh failed; keeping snapshot #%s: %s", self.snapshot.sequence, exc)
            self._publish()
            return False
        except Exception as exc:
            metrics.record_snapshot_fetch('error')
            self.last_fetch_error = repr(exc)
            logger.exception("Unexpected error refreshing snapshot")
            self._publish()
            return False

        metrics.record_snapshot_fetch('ok')
        return self.apply_snapshot(snapshot)

    def apply_snapshot(self, snapshot: Snapshot) -> bool:
        if snapshot.sequence <= self.snapshot.sequence:
            metrics.record_stale_snapshot()
            logger.info(
                "Discarding snapshot #%s; #%s is already applied",
                snapshot.sequence,
                self.snapshot.sequence,
            )
            return False
        self.snapshot = snapshot
        self.last_fetch_error = None
        self._publish()
        return True

    async def _run_command(self, command: str, call: Callable, *args) -> bool:
        try:
            await call(*args)
        except asyncio.CancelledError:
            raise
        except CommandRejected as exc:
            metrics.record_command(command, 'rejected')
            self.last_command_error = f"{command}: {exc}"
            logger.warning("Auto-trade %s rejected: %s", command, exc)
            return False
        except FlowAPIError as exc:
            metrics.record_command(command, 'failed')
            self.last_command_error = f"{command}: {exc}"
            logger.error("Auto-trade %s failed: %s", command, exc)
            return False
        except Exception as exc:
            metrics.record_command(command, 'error')
            self.last_command_error = f"{command}: {exc!r}"
            logger.exception("Auto-trade %s raised unexpectedly", command)
            return False
        metrics.record_command(command, 'ok')
        self.last_command_error = None
        return True

    async def toggle_auto_trade(self) -> bool:
        """Ask the backend to flip auto-trading, then re-read its real state."""
        if self.snapshot.enabled:
            ok = await self._run_command('disable', self.api_client.disable_auto_trade)
        else:
            ok = await self._run_command('enable', self.api_client.enable_auto_trade)
        await self.refresh()
        return ok

    async def place_simulated_trade(self, symbol: str, direction: str) -> bool:
        side = SIMULATE_SIDES.get(str(direction or '').strip().upper())
        symbol = str(symbol or '').strip().upper()
        if side is None or not symbol:
            metrics.record_command('simulate', 'invalid')
            self.last_command_error = f"simulate: invalid trade request symbol={symbol!r} side={direction!r}"
            logger.warning("Refusing simulated trade: symbol=%r side=%r", symbol, direction)
            self._publish()
            return False
        ok = await self._run_command('simulate', self.api_client.simulate_trade, symbol, side)
        await self.refresh()
        return ok

    async def wait_idle(self):
        while self._pending_refreshes:
            await asyncio.gather(*list(self._pending_refreshes), return_exceptions=True)

    async def start(self):
        self.running = True
        await self.refresh()

        tasks = [
            asyncio.create_task(self.connection.start()),
            asyncio.create_task(self.fetcher.poll(self.refresh)),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.connection.close()
        await self.wait_idle()
        await self.fetcher.stop()
        if self.api_client is not self.fetcher.client:
            await self.api_client.close()
