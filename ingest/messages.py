"""Decode raw stream frames into a closed set of message variants."""
from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .flow_types import EventKind, FlowEvent


class MalformedMessage(ValueError):
    """A stream frame that cannot be decoded into a known message."""


class UnsupportedMessage(MalformedMessage):
    """A well-formed frame whose ``type`` tag this client does not consume."""


class LifecycleKind(Enum):
    AUTO_TRADE_EXECUTED = "AUTO_TRADE_EXECUTED"
    AUTO_TRADE_CLOSED = "AUTO_TRADE_CLOSED"
    SIMULATED_TRADE = "SIMULATED_TRADE"
    PAPER_TRADE = "PAPER_TRADE"
    SIMULATED_TRADE_CLOSED = "SIMULATED_TRADE_CLOSED"


@dataclass(frozen=True)
class FlowEventMessage:
    event: FlowEvent


@dataclass(frozen=True)
class TradeLifecycleMessage:
    kind: LifecycleKind


StreamMessage = Union[FlowEventMessage, TradeLifecycleMessage]

_FLOW_KINDS = {kind.value: kind for kind in EventKind}
_LIFECYCLE_KINDS = {kind.value: kind for kind in LifecycleKind}

# Arrival order across every decoded flow event in the process
_arrival_counter = itertools.count(1)


def decode_frame(raw: Union[str, bytes]) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage(f"frame is not utf-8: {exc}") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessage(f"frame is a {type(data).__name__}, expected an object")
    return data


def parse_message(data: Any) -> StreamMessage:
    """Turn a decoded frame object into a :data:`StreamMessage`."""
    if not isinstance(data, dict):
        raise MalformedMessage(f"message is a {type(data).__name__}, expected an object")

    tag = data.get("type")
    if not isinstance(tag, str) or not tag:
        raise MalformedMessage("message has no type tag")
    tag = tag.upper()

    if tag in _FLOW_KINDS:
        try:
            event = FlowEvent.from_wire(data, _FLOW_KINDS[tag], next(_arrival_counter))
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedMessage(f"{tag} frame has unusable fields: {exc}") from exc
        return FlowEventMessage(event)
    if tag in _LIFECYCLE_KINDS:
        return TradeLifecycleMessage(_LIFECYCLE_KINDS[tag])
    raise UnsupportedMessage(f"unsupported message type {tag!r}")


def parse_frame(raw: Union[str, bytes]) -> StreamMessage:
    return parse_message(decode_frame(raw))
