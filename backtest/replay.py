import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ingest.messages import MalformedMessage, UnsupportedMessage, parse_frame, parse_message


logger = logging.getLogger(__name__)


@dataclass
class ReplayEvent:
    ts_ms: Optional[int]
    payload: Any  # decoded frame object as it arrived on the stream


@dataclass
class ReplayResult:
    delivered: int = 0
    dropped: int = 0
    ignored: int = 0


class ReplaySimulator:
    """Feed recorded stream frames through the live decoding path into a StateStore."""

    def __init__(self, state_store):
        self.state_store = state_store
        self._events: List[ReplayEvent] = []

    def load_from_list(self, events: List[Dict[str, Any]]):
        for item in events:
            if isinstance(item, dict) and 'payload' in item:
                self._events.append(ReplayEvent(item.get('ts_ms'), item['payload']))
            else:
                self._events.append(ReplayEvent(None, item))

    def load_from_file(self, path: Union[str, Path]):
        """Load a JSONL recording: one raw frame object (or ``{ts_ms, payload}``) per line."""
        path = Path(path)
        with path.open('r', encoding='utf-8') as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    item = json.loads(line)
                except ValueError as exc:
                    logger.warning("Skipping unreadable line %s in %s: %s", line_no, path, exc)
                    self._events.append(ReplayEvent(None, line))
                    continue
                self.load_from_list([item])

    async def replay(self, realtime: bool = False, speed: float = 1.0) -> ReplayResult:
        result = ReplayResult()
        last_ts: Optional[int] = None
        for event in self._events:
            if realtime and event.ts_ms is not None and last_ts is not None:
                delay = max(0.0, (event.ts_ms - last_ts) / 1000.0 / max(speed, 1e-6))
                if delay:
                    await asyncio.sleep(delay)
            if event.ts_ms is not None:
                last_ts = event.ts_ms

            try:
                if isinstance(event.payload, (str, bytes)):
                    message = parse_frame(event.payload)
                else:
                    message = parse_message(event.payload)
            except UnsupportedMessage as exc:
                result.ignored += 1
                logger.debug("Replay ignoring frame: %s", exc)
                continue
            except MalformedMessage as exc:
                result.dropped += 1
                logger.warning("Replay dropping malformed frame: %s", exc)
                continue

            await self.state_store.handle_message(message)
            result.delivered += 1

        await self.state_store.wait_idle()
        logger.info(
            "Replay complete: %s delivered, %s dropped, %s ignored",
            result.delivered,
            result.dropped,
            result.ignored,
        )
        return result
