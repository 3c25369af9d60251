"""Logging configuration for DRMS offline sync."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory

from drms_sync.config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structured logging for the sync service.

    Log lines carry any values bound with :func:`bind_sync_context`, so every
    line emitted during a drain names that drain.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            render_processor(settings),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )


def render_processor(settings: Optional[Settings] = None) -> Any:
    """JSON lines for collected device logs, colored console otherwise."""
    settings = settings or get_settings()

    if settings.log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def get_logger(name: str) -> BoundLogger:
    """Get a configured logger instance."""
    bound_logger: BoundLogger = structlog.get_logger(name)
    return bound_logger


def bind_sync_context(**values: Any) -> None:
    """Bind values to every log line of the current asyncio task."""
    structlog.contextvars.bind_contextvars(**values)


class AuditLogger:
    """Logger for the conflict audit trail."""

    def __init__(self) -> None:
        """Initialize audit logger."""
        self.logger = get_logger("drms_sync.audit")

    def log_conflict_detected(
        self,
        conflict_id: str,
        entity_type: str,
        entity_uuid: str,
        local_version: int,
        server_version: int,
    ) -> None:
        """Log creation of a conflict record."""
        self.logger.info(
            "conflict_detected",
            conflict_id=conflict_id,
            entity_type=entity_type,
            entity_uuid=entity_uuid,
            local_version=local_version,
            server_version=server_version,
        )

    def log_conflict_resolved(
        self,
        conflict_id: str,
        strategy: str,
        resolved_by: str,
        winning_side: str,
    ) -> None:
        """Log the single resolution of a conflict record."""
        self.logger.info(
            "conflict_resolved",
            conflict_id=conflict_id,
            strategy=strategy,
            resolved_by=resolved_by,
            winning_side=winning_side,
        )


audit_logger = AuditLogger()
