import asyncio
import json
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import websockets

from api.metrics import metrics
from config import config
from config.utils import get_config_section
from .messages import MalformedMessage, UnsupportedMessage, parse_frame


logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class ConnectionStatus(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class ConnectionLost(ConnectionError):
    """The stream transport closed or errored; close and error are not distinguished."""


def subscription_message(futures_symbols: Sequence[str], equity_symbols: Sequence[str]) -> Dict[str, Any]:
    return {
        "action": "subscribe",
        "futuresSymbols": list(futures_symbols),
        "equitySymbols": list(equity_symbols),
    }


class ConnectionManager:
    """Own the flow stream socket: subscribe, decode frames, report status, reconnect."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        url: Optional[str] = None,
        futures_symbols: Optional[Sequence[str]] = None,
        equity_symbols: Optional[Sequence[str]] = None,
    ):
        stream_cfg = get_config_section(config_obj if config_obj is not None else config, 'stream')
        self.url = url or stream_cfg.get('url') or 'ws://localhost:3000/ws'
        self.futures_symbols: List[str] = list(
            futures_symbols if futures_symbols is not None else stream_cfg.get('futures_symbols', [])
        )
        self.equity_symbols: List[str] = list(
            equity_symbols if equity_symbols is not None else stream_cfg.get('equity_symbols', [])
        )
        self.reconnect_enabled = bool(stream_cfg.get('reconnect_enabled', True))
        self.reconnect_backoff: List[float] = [float(d) for d in stream_cfg.get('reconnect_backoff') or [1, 2, 5, 10, 30]]
        self.reconnect_jitter_s = float(stream_cfg.get('reconnect_jitter_s', 0.5))
        self.max_reconnects = int(stream_cfg.get('max_reconnects_per_minute', 10))
        self.open_timeout_s = float(stream_cfg.get('open_timeout_s', 10))
        self.stale_timeout_s = float(stream_cfg.get('stale_timeout_s', 0) or 0)

        self.handlers: Dict[str, Handler] = {}
        self.status = ConnectionStatus.DISCONNECTED
        self.running = False
        self.closed = False
        self.last_error: Optional[ConnectionLost] = None
        self.frames_received = 0
        self.frames_dropped = 0
        self.reconnect_count = 0
        self.last_reconnect_window = time.time()
        self._session_established = False
        self._ws = None

    def register_handler(self, event: str, handler: Handler):
        self.handlers[event] = handler

    def subscription_message(self) -> Dict[str, Any]:
        return subscription_message(self.futures_symbols, self.equity_symbols)

    async def _emit(self, event: str, payload: Any):
        handler = self.handlers.get(event)
        if handler is None:
            return
        try:
            await handler(payload)
        except Exception:
            logger.exception("Stream %s handler failed", event)

    async def _set_status(self, status: ConnectionStatus):
        if status is self.status:
            return
        logger.info("Flow stream %s -> %s", self.status.value, status.value)
        self.status = status
        metrics.update_connection_status(status.value)
        await self._emit('status', status)

    async def connect(self):
        """Run one session: open, subscribe, read frames until the transport ends."""
        if self.closed:
            logger.warning("connect() called on a closed ConnectionManager; ignoring")
            return

        self._session_established = False
        await self._set_status(ConnectionStatus.CONNECTING)
        try:
            async with websockets.connect(self.url, open_timeout=self.open_timeout_s) as ws:
                self._ws = ws
                self._session_established = True
                await self._set_status(ConnectionStatus.CONNECTED)
                await ws.send(json.dumps(self.subscription_message()))
                logger.info(
                    "Subscribed to %s futures / %s equity symbols",
                    len(self.futures_symbols),
                    len(self.equity_symbols),
                )
                while not self.closed:
                    raw = await self._receive(ws)
                    await self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self.closed:
                self.last_error = ConnectionLost(str(e) or type(e).__name__)
                logger.warning("Flow stream lost: %s", self.last_error)
        finally:
            self._ws = None
            await self._set_status(ConnectionStatus.DISCONNECTED)

    async def _receive(self, ws):
        if self.stale_timeout_s <= 0:
            return await ws.recv()
        try:
            return await asyncio.wait_for(ws.recv(), timeout=self.stale_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Flow stream silent for %.1fs; treating as lost", self.stale_timeout_s)
            raise

    async def _handle_frame(self, raw):
        self.frames_received += 1
        try:
            message = parse_frame(raw)
        except UnsupportedMessage as exc:
            self.frames_dropped += 1
            metrics.record_drop('unsupported')
            logger.debug("Ignoring stream frame: %s", exc)
            return
        except MalformedMessage as exc:
            self.frames_dropped += 1
            metrics.record_drop('malformed')
            logger.warning("Dropping malformed stream frame: %s", exc)
            return
        await self._emit('message', message)

    async def _handle_reconnect(self, backoff_index: int = 0):
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        metrics.record_reconnect()

        if self.reconnect_count > self.max_reconnects:
            logger.warning(
                "%s reconnects in 60s; backing off to the longest delay",
                self.reconnect_count,
            )
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, self.reconnect_jitter_s)
        else:
            delay = self.reconnect_backoff[backoff_index] + random.uniform(0, self.reconnect_jitter_s)

        logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)

    async def start(self):
        """Keep sessions alive until :meth:`close`, backing off between attempts."""
        self.running = True
        backoff_index = 0
        try:
            while self.running and not self.closed:
                await self.connect()
                if not self.running or self.closed:
                    break
                if not self.reconnect_enabled:
                    logger.warning("Flow stream disconnected and reconnect is disabled")
                    break
                if self._session_established:
                    backoff_index = 0
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False

    async def close(self):
        self.closed = True
        self.running = False
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Error while closing flow stream: %s", exc)
