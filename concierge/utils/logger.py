"""
Logging configuration for the concierge pipeline.

Every record carries the current request context (request id, shop and
session token) so one shopper request can be followed from the API through
intent parsing, ranking and billing. The API binds the context per request;
code running outside a request logs "-" for each field.

LOG_LEVEL sets the level (default INFO).
"""
from contextlib import contextmanager
from contextvars import ContextVar
import logging
import os
import sys
import uuid
from typing import Dict, Iterator, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [req=%(request_id)s shop=%(shop)s session=%(session)s] %(message)s"
REQUEST_ID_HEADER = "X-Request-ID"

_request_id: ContextVar[Optional[str]] = ContextVar("concierge_request_id", default=None)
_shop: ContextVar[Optional[str]] = ContextVar("concierge_shop", default=None)
_session: ContextVar[Optional[str]] = ContextVar("concierge_session", default=None)


class RequestContextFilter(logging.Filter):
    """Copies the bound request context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get() or "-"
        record.shop = _shop.get() or "-"
        record.session = _short_token(_session.get())
        return True


def _short_token(token: Optional[str]) -> str:
    # Session tokens are bearer secrets; only a prefix goes to the logs
    if not token:
        return "-"
    return token[:8]


logger = logging.getLogger("concierge")
logger.setLevel(LOG_LEVEL)

if not logger.handlers:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)
    console_handler.addFilter(RequestContextFilter())
    console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(console_handler)

logger.propagate = False


def get_logger(name: str = None) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Optional name for the logger (will be appended to 'concierge')

    Returns:
        Logger instance
    """
    if name:
        return logging.getLogger(f"concierge.{name}")
    return logger


def new_request_id() -> str:
    return str(uuid.uuid4())


def current_request_context() -> Dict[str, Optional[str]]:
    return {"request_id": _request_id.get(), "shop": _shop.get(), "session": _session.get()}


def bind_shop(shop: Optional[str]) -> None:
    """Attach the shop to the current context once it is known (e.g. after a session lookup)."""
    _shop.set(shop)


@contextmanager
def request_context(
    request_id: Optional[str] = None,
    shop: Optional[str] = None,
    session: Optional[str] = None,
) -> Iterator[str]:
    """
    Bind request fields for the duration of a block.

    Yields the request id in effect (generated when not given).
    """
    rid = request_id or new_request_id()
    tokens = (_request_id.set(rid), _shop.set(shop), _session.set(session))
    try:
        yield rid
    finally:
        _session.reset(tokens[2])
        _shop.reset(tokens[1])
        _request_id.reset(tokens[0])
