import asyncio
import json
from typing import Any, Dict, List, Optional

from ingest.flow_api import CommandRejected, FetchFailed


TEST_CONFIG: Dict[str, Any] = {
    'stream': {
        'url': 'ws://flow.test/ws',
        'futures_symbols': ['/ES', '/NQ'],
        'equity_symbols': ['SPY', 'QQQ', 'AAPL', 'TSLA'],
        'reconnect_enabled': False,
        'reconnect_backoff': [0, 0],
        'reconnect_jitter_s': 0,
        'max_reconnects_per_minute': 100,
    },
    'api': {
        'base_url': 'http://flow.test',
        'poll_interval_s': 0,
    },
    'flow': {
        'buffer_capacity': 5,
        'bullish_threshold': 30,
        'bearish_threshold': -30,
    },
}


def flow_frame(symbol='SPY', stance=0.0, kind='TRADE', **extra) -> Dict[str, Any]:
    frame = {
        'type': kind,
        'symbol': symbol,
        'direction': 'BTO',
        'size': 10,
        'premium': 250_000,
        'strike': 450,
        'right': 'CALL',
        'stanceScore': stance,
        'stanceLabel': 'BULLISH' if stance > 30 else 'NEUTRAL',
        'confidence': 80,
        'classifications': ['SWEEP'],
    }
    frame.update(extra)
    return frame


def status_payload(enabled=False, positions=None, recent_orders=None, signals=None) -> Dict[str, Any]:
    return {
        'enabled': enabled,
        'positions': positions or [],
        'signals': signals or {},
        'recentOrders': recent_orders or [],
    }


class FakeAPIClient:
    """Stands in for FlowAPIClient; records calls and replays queued outcomes."""

    def __init__(self, statuses: Optional[List[Any]] = None):
        self.statuses: List[Any] = list(statuses or [])
        self.calls: List[tuple] = []
        self.command_error: Optional[Exception] = None
        self.closed = False

    async def get_status(self):
        self.calls.append(('status',))
        if not self.statuses:
            raise FetchFailed("no status queued")
        outcome = self.statuses.pop(0)
        if isinstance(outcome, asyncio.Future):
            outcome = await outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def _command(self, *call):
        self.calls.append(call)
        if self.command_error is not None:
            raise self.command_error

    async def enable_auto_trade(self):
        await self._command('enable')

    async def disable_auto_trade(self):
        await self._command('disable')

    async def simulate_trade(self, symbol, side):
        await self._command('simulate', symbol, side)

    async def close(self):
        self.closed = True

    def commands(self) -> List[tuple]:
        return [c for c in self.calls if c[0] != 'status']


def rejected(status=409) -> CommandRejected:
    return CommandRejected(f"HTTP {status}", status=status, body='{}')


class FakeSocket:
    def __init__(self, frames: List[Any]):
        self.frames = list(frames)
        self.sent: List[str] = []
        self.closed = False

    async def send(self, data: str):
        self.sent.append(data)

    async def recv(self):
        await asyncio.sleep(0)
        if self.closed or not self.frames:
            raise ConnectionError("stream closed by peer")
        frame = self.frames.pop(0)
        return frame if isinstance(frame, (str, bytes)) else json.dumps(frame)

    async def close(self):
        self.closed = True

    def subscriptions(self) -> List[Dict[str, Any]]:
        return [json.loads(s) for s in self.sent]


class _Session:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        if isinstance(self.outcome, FakeSocket):
            self.outcome.closed = True
        return False


class FakeConnect:
    """Replacement for ``websockets.connect``: one queued socket or error per call."""

    def __init__(self, outcomes: List[Any]):
        self.outcomes = list(outcomes)
        self.urls: List[str] = []

    def __call__(self, url, **kwargs):
        self.urls.append(url)
        if not self.outcomes:
            return _Session(OSError("no more sockets"))
        return _Session(self.outcomes.pop(0))
