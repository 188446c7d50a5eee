import logging
from functools import partial
from typing import Callable

from kb_ingest.config import Settings

LOG_FORMAT = "%(asctime)s | %(name)-8s | %(message)s"
LOG_DATEFMT = "%H:%M:%S"
MAX_FIELD_CHARS = 160


def _ensure_logging_configured() -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)


def get_logger(name: str) -> logging.Logger:
    _ensure_logging_configured()
    return logging.getLogger(name)


def _format_value(value: object) -> str:
    if isinstance(value, (list, tuple, set)):
        value = ",".join(str(item) for item in value)
    text = str(value)
    if len(text) > MAX_FIELD_CHARS:
        return text[: MAX_FIELD_CHARS - 1] + "…"
    return text


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    if not Settings.crawl_log:
        return
    parts = " ".join(f"{key}={_format_value(value)}" for key, value in fields.items())
    logger.info("%-10s %s", event.upper(), parts)


def get_event_logger(name: str, **bound: object) -> Callable[..., None]:
    """Return ``log_event`` bound to a logger, optionally with fixed fields.

    Bound fields (e.g. ``website=...`` for one sync job) are printed before the
    per-call fields.
    """
    logger = get_logger(name)
    if not bound:
        return partial(log_event, logger)

    def _log(event: str, **fields: object) -> None:
        log_event(logger, event, **{**bound, **fields})

    return _log
