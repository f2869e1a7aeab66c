"""Security audit sink.

Audit records are written to the ``gateway.audit`` logger. The logger feeds a
``QueueHandler`` whose ``QueueListener`` drains to the real handlers on a
background thread, so emitting from the request path never waits on handler
I/O.
"""

from __future__ import annotations

import logging
import queue
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Mapping, Optional

from gateway.app.auth.errors import utc_timestamp

AUDIT_LOGGER_NAME = "gateway.audit"


class AuditSink:
    def emit(
        self,
        category: str,
        *,
        actor_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)
        self._listener: Optional[QueueListener] = None

    def start(self) -> None:
        """Move the logger's handlers (or the root's) behind a queue."""

        if self._listener is not None:
            return
        targets = list(self._logger.handlers) or list(logging.getLogger().handlers)
        if not targets:
            return
        records: queue.SimpleQueue = queue.SimpleQueue()
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
        self._logger.addHandler(QueueHandler(records))
        self._logger.propagate = False
        self._listener = QueueListener(records, *targets, respect_handler_level=True)
        self._listener.start()

    def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.stop()
        self._listener = None

    def emit(
        self,
        category: str,
        *,
        actor_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._logger.warning(
            "Security Event",
            extra={
                "json_fields": {
                    "category": "security",
                    "event_type": category,
                    "user_id": actor_id,
                    "ip_address": client_ip,
                    "details": dict(metadata or {}),
                    "timestamp": utc_timestamp(),
                }
            },
        )


__all__ = ["AUDIT_LOGGER_NAME", "AuditSink", "LoggingAuditSink"]
