import logging
from typing import Any, Iterable, Optional, Union

from config.utils import get_config_section


DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# Libraries that log per frame / per request below INFO
NOISY_LOGGERS = ("websockets", "aiohttp.access")


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if not level:
        return default
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_format: Optional[str] = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure process-wide logging for the flow desk.

    Call once from an entrypoint. Later calls are ignored if the root
    logger already has handlers (uvicorn and pytest install their own).
    """
    if logging.getLogger().handlers:
        return

    level = resolve_level(level)
    logging.basicConfig(level=level, format=log_format or DEFAULT_FORMAT)
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


def setup_logging_from_config(config_obj: Any) -> None:
    monitoring_cfg = get_config_section(config_obj, 'monitoring')
    setup_logging(
        monitoring_cfg.get('log_level', 'INFO'),
        monitoring_cfg.get('log_format'),
        monitoring_cfg.get('quiet_loggers') or NOISY_LOGGERS,
    )
