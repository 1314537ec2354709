import asyncio
import logging
from typing import Optional

from api.metrics import start_metrics_server
from config import config
from config.utils import get_config_section
from monitoring.logging_utils import setup_logging_from_config
from orchestration.state_store import ReadModel, StateStore


logger = logging.getLogger(__name__)


class FlowDesk:
    """Headless runner: the state core plus its metrics endpoint."""

    def __init__(self, config_obj=None):
        self.config = config_obj if config_obj is not None else config
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.store = StateStore(self.config)
        self._last_status: Optional[str] = None
        self.store.subscribe(self._log_status_changes)

    def _log_status_changes(self, model: ReadModel):
        status = model.status.value
        if status != self._last_status:
            self._last_status = status
            logger.info(
                "Stream %s | flows=%s open=%s closed=%s pnl=%.2f win=%.1f%%",
                status,
                len(model.flows),
                model.stats.open_positions,
                model.stats.total_trades,
                model.stats.total_pnl,
                model.stats.win_rate,
            )

    async def start(self):
        if self.monitoring_cfg.get('metrics_enabled', True):
            start_metrics_server(
                int(self.monitoring_cfg.get('prometheus_port', 9108)),
                int(self.monitoring_cfg.get('prometheus_port_scan', 0)),
            )
        await self.store.start()

    async def stop(self):
        await self.store.stop()


async def main():
    desk = FlowDesk(config)
    try:
        await desk.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down on interrupt")
        await desk.stop()


if __name__ == "__main__":
    setup_logging_from_config(config)
    asyncio.run(main())
