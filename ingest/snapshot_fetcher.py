import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from config import config
from config.utils import get_config_section
from .flow_api import FetchFailed, FlowAPIClient
from .flow_types import Snapshot


logger = logging.getLogger(__name__)


class SnapshotFetcher:
    """Pull authoritative auto-trade state; each request gets a sequence number."""

    def __init__(self, client: Optional[FlowAPIClient] = None, config_obj: Optional[Any] = None):
        api_cfg = get_config_section(config_obj if config_obj is not None else config, 'api')
        self.client = client or FlowAPIClient(config_obj)
        self.poll_interval_s = float(api_cfg.get('poll_interval_s', 0) or 0)
        self.running = False
        self.fail_count = 0
        self._sequence = 0

    @property
    def latest_sequence(self) -> int:
        return self._sequence

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _failed(self, exc: FetchFailed, sequence: int) -> FetchFailed:
        self.fail_count += 1
        exc.sequence = sequence
        return exc

    async def fetch_snapshot(self) -> Snapshot:
        sequence = self.next_sequence()
        try:
            payload = await self.client.get_status()
        except FetchFailed as exc:
            self._failed(exc, sequence)
            raise
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise self._failed(FetchFailed(f"status response #{sequence} is not JSON"), sequence) from exc
        if not isinstance(payload, dict):
            raise self._failed(
                FetchFailed(f"status response #{sequence} is a {type(payload).__name__}, expected an object"),
                sequence,
            )
        self.fail_count = 0
        return Snapshot.from_wire(payload, sequence=sequence)

    async def poll(self, handler: Callable[[], Awaitable[None]], interval_s: Optional[float] = None):
        interval = self.poll_interval_s if interval_s is None else float(interval_s)
        if interval <= 0:
            logger.info("Snapshot polling disabled; refreshes are event driven")
            return
        self.running = True
        try:
            while self.running:
                try:
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    break
                if not self.running:
                    break
                try:
                    await handler()
                except asyncio.CancelledError:
                    break
                except Exception:
                    logger.exception("Periodic snapshot refresh failed")
        finally:
            self.running = False

    async def stop(self):
        self.running = False
        await self.client.close()
