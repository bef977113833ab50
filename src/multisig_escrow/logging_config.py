"""Structured logging configuration using structlog.

Provides JSON-structured logging in production and human-readable colored
output in development. REST requests bind a request_id into the context,
and long-running escrow work (payment watches, signing phases) binds the
contract and order ids, so every transition logged underneath carries them.

Usage:
    from multisig_escrow.logging_config import contract_context, get_logger
    logger = get_logger(__name__)
    with contract_context(contract_id="CTR-8821-X", order_id="ORD-9928-AX"):
        logger.info("escrow.funds_locked", amount=Decimal("4.2500"))
"""

from __future__ import annotations

import enum
import logging
import sys
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from contextlib import AbstractContextManager
    from typing import Any


def render_escrow_values(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Make amounts and steps readable in both renderers.

    XMR amounts are Decimals and would otherwise be repr'd; EscrowStep is an
    IntEnum and would otherwise serialize as its ordinal.
    """
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, enum.IntEnum):
            event_dict[key] = value.name
        elif isinstance(value, enum.StrEnum):
            event_dict[key] = str(value)
    return event_dict


def contract_context(
    contract_id: str, order_id: str | None = None
) -> AbstractContextManager[None]:
    """Bind a contract (and its order) to every log line in the block."""
    ids = {"contract_id": contract_id}
    if order_id is not None:
        ids["order_id"] = order_id
    return structlog.contextvars.bound_contextvars(**ids)


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog with shared processors.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON (for production). If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        render_escrow_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    # Quiet per-request and SQL loggers
    for noisy_logger in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "mcp.server"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

