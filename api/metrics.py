import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server


logger = logging.getLogger(__name__)

NAMESPACE = 'flowdesk'

# Gauge encoding for ConnectionStatus values
STATUS_CODES = {'DISCONNECTED': 0, 'CONNECTING': 1, 'CONNECTED': 2}

_bound_port: Optional[int] = None


class MetricsCollector:
    """Prometheus series for the stream, the snapshot cycle and derived stats."""

    def __init__(self, namespace: str = NAMESPACE):
        def counter(name, doc, labels=()):
            return Counter(name, doc, list(labels), namespace=namespace)

        def gauge(name, doc):
            return Gauge(name, doc, namespace=namespace)

        # stream
        self.flow_events = counter('flow_events_total', 'Flow events pushed into the buffer', ['kind'])
        self.lifecycle_events = counter('trade_lifecycle_events_total', 'Trade lifecycle events received', ['kind'])
        self.dropped_frames = counter('dropped_frames_total', 'Inbound stream frames dropped', ['reason'])
        self.reconnects = counter('stream_reconnects_total', 'Stream reconnect attempts')
        self.connection_status = gauge('stream_connection_status', 'Stream status (0=disconnected, 1=connecting, 2=connected)')

        # snapshot / commands
        self.snapshot_fetches = counter('snapshot_fetches_total', 'Snapshot fetch attempts by outcome', ['result'])
        self.stale_snapshots = counter('stale_snapshots_discarded_total', 'Snapshot responses superseded by a newer request')
        self.commands = counter('commands_total', 'Auto-trade commands issued', ['command', 'result'])

        # read model
        self.buffer_depth = gauge('flow_buffer_depth', 'Flow events currently retained')
        self.open_positions = gauge('open_positions', 'Open positions in the latest snapshot')
        self.total_pnl = gauge('closed_pnl_dollars', 'Realized dollar P&L over closed trades')
        self.win_rate = gauge('win_rate_pct', 'Win rate over closed trades')

    def record_flow_event(self, kind: str):
        self.flow_events.labels(kind=kind).inc()

    def record_lifecycle_event(self, kind: str):
        self.lifecycle_events.labels(kind=kind).inc()

    def record_drop(self, reason: str):
        self.dropped_frames.labels(reason=reason).inc()

    def record_reconnect(self):
        self.reconnects.inc()

    def record_snapshot_fetch(self, result: str):
        self.snapshot_fetches.labels(result=result).inc()

    def record_stale_snapshot(self):
        self.stale_snapshots.inc()

    def record_command(self, command: str, result: str):
        self.commands.labels(command=command, result=result).inc()

    def update_connection_status(self, status: str):
        self.connection_status.set(STATUS_CODES.get(status, 0))

    def update_buffer_depth(self, depth: int):
        self.buffer_depth.set(depth)

    def update_stats(self, open_positions: int, total_pnl: float, win_rate: float):
        self.open_positions.set(open_positions)
        self.total_pnl.set(total_pnl)
        self.win_rate.set(win_rate)


def start_metrics_server(port: int = 9108, port_scan: int = 0) -> int:
    """Expose /metrics on ``port``, or the next free one within ``port_scan``; return the port."""
    global _bound_port
    if _bound_port is not None:
        return _bound_port

    for candidate in range(port, port + max(0, int(port_scan)) + 1):
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s in use; trying the next one", candidate)
            continue
        _bound_port = candidate
        logger.info("Prometheus metrics on :%s/metrics", candidate)
        return candidate

    raise RuntimeError(f"No free metrics port in {port}-{port + max(0, int(port_scan))}")


metrics = MetricsCollector()
