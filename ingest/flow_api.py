import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import config
from config.utils import get_config_section


logger = logging.getLogger(__name__)


class FlowAPIError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message)


class FetchFailed(FlowAPIError):
    """The request never produced a usable response."""

    # Snapshot request sequence, set by SnapshotFetcher
    sequence: Optional[int] = None


class CommandRejected(FlowAPIError):
    """The backend answered a command with a non-success status."""


class FlowAPIClient:
    """Async client for the auto-trade status and command endpoints."""

    def __init__(self, config_obj: Optional[Any] = None, base_url: Optional[str] = None):
        api_cfg = get_config_section(config_obj if config_obj is not None else config, 'api')
        self.base_url = str(base_url or api_cfg.get('base_url') or 'http://localhost:3000').rstrip('/')
        self.status_path = api_cfg.get('status_path', '/auto-trade/status')
        self.enable_path = api_cfg.get('enable_path', '/auto-trade/enable')
        self.disable_path = api_cfg.get('disable_path', '/auto-trade/disable')
        self.simulate_path = api_cfg.get('simulate_path', '/auto-trade/simulate')
        self.timeout_s = float(api_cfg.get('timeout_s', 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                )
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        error_cls: type = FetchFailed,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            session = await self._get_session()
            async with session.request(method.upper(), url, json=body) as resp:
                text = await resp.text()
                status = resp.status
                content_type = resp.headers.get("Content-Type", "")
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise FetchFailed(f"{method.upper()} {path} failed: {exc!r}") from exc

        if status >= 400:
            raise error_cls(f"{method.upper()} {path} returned HTTP {status}", status=status, body=text)

        if "application/json" in content_type and text:
            try:
                return json.loads(text)
            except ValueError:
                return text
        return text

    async def get_status(self) -> Any:
        return await self._request("GET", self.status_path)

    async def enable_auto_trade(self) -> None:
        await self._request("POST", self.enable_path, error_cls=CommandRejected)

    async def disable_auto_trade(self) -> None:
        await self._request("POST", self.disable_path, error_cls=CommandRejected)

    async def simulate_trade(self, symbol: str, side: str) -> None:
        await self._request(
            "POST",
            self.simulate_path,
            body={"symbol": symbol, "side": side},
            error_cls=CommandRejected,
        )
