"""
Ephemera — Structured Logging with Trace IDs

Emits JSON log lines for every lifecycle event the control plane
produces. Field names follow OpenTelemetry semantic conventions so the
output can be shipped to an OTel collector unchanged.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: OTel-compatible (trace_id, span_id, service.name)
  - One trace_id per handled intent; every provisioner call and state
    transition made on behalf of that intent carries it

Usage:
    from infra.logging import ReconcileLogger, configure_logging

    configure_logging(level="INFO")
    rlog = ReconcileLogger(environment_id="123", intent_id="int_ab12")
    rlog.on_transition("requested", "provisioning", generation=2)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - trace_id: maps to OTel trace ID
      - span_id: maps to OTel span ID
      - service.name: "ephemera"
      - service.version: from EPH_VERSION
    """

    def __init__(self, service_name: str = "ephemera"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("EPH_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Structured fields attached by ReconcileLogger
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

ROOT_LOGGER = "ephemera"


def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "ephemera",
) -> logging.Logger:
    """
    Configure the ephemera logger tree with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured namespace root logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the ephemera namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Reconcile Logger
# ═══════════════════════════════════════════════════════════════════

class ReconcileLogger:
    """
    Structured event logger bound to one intent's handling.

    Every entry includes environment_id, intent_id and trace_id so a
    single reconciliation can be followed end to end.
    """

    def __init__(
        self,
        environment_id: str,
        intent_id: str = "",
        action: str = "",
        trace_id: str | None = None,
    ):
        self.environment_id = environment_id
        self.intent_id = intent_id
        self.action = action
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("trace")

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "trace_id": self.trace_id,
            "environment_id": self.environment_id,
        }
        if self.intent_id:
            fields["intent_id"] = self.intent_id
        if self.action:
            fields["intent_action"] = self.action
        return fields

    def _emit(self, level: int, event: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "event": event, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=event,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_intent_received(self, source: str, submitted_generation: int | None) -> None:
        self._emit(
            logging.INFO, "intent_received",
            source=source,
            submitted_generation=submitted_generation,
        )

    def on_intent_rejected(self, reason: str, state: str = "") -> None:
        self._emit(logging.WARNING, "intent_rejected", reason=reason, state=state)

    def on_intent_superseded(self, state: str, pending_action: str) -> None:
        self._emit(
            logging.INFO, "intent_superseded",
            state=state,
            pending_action=pending_action,
        )

    def on_transition(self, from_state: str, to_state: str, generation: int) -> None:
        self._emit(
            logging.INFO, "transition",
            from_state=from_state,
            to_state=to_state,
            generation=generation,
        )

    def on_resource_ensured(self, kind: str, name: str, elapsed_s: float) -> None:
        self._emit(
            logging.INFO, "resource_ensured",
            span_id=generate_span_id(),
            resource_kind=kind,
            resource_name=name,
            latency_ms=round(elapsed_s * 1000, 1),
        )

    def on_resource_removed(self, kind: str, name: str, elapsed_s: float) -> None:
        self._emit(
            logging.INFO, "resource_removed",
            span_id=generate_span_id(),
            resource_kind=kind,
            resource_name=name,
            latency_ms=round(elapsed_s * 1000, 1),
        )

    def on_provisioner_retry(self, operation: str, attempt: int,
                             max_attempts: int, error: str, backoff_s: float) -> None:
        self._emit(
            logging.WARNING, "provisioner_retry",
            operation=operation,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error[:500],
            backoff_s=round(backoff_s, 2),
        )

    def on_degraded(self, kind: str, message: str, retry_count: int) -> None:
        self._emit(
            logging.ERROR, "environment_degraded",
            error_kind=kind,
            error=message[:500],
            retry_count=retry_count,
        )

    def on_conflict(self, reason: str) -> None:
        self._emit(logging.WARNING, "conflict", reason=reason[:500])

    def on_observation(self, fields: dict[str, Any], generation: int) -> None:
        self._emit(
            logging.DEBUG, "observation_applied",
            generation=generation,
            **fields,
        )

    def on_reconcile_end(self, outcome: str, state: str, elapsed_s: float) -> None:
        self._emit(
            logging.INFO, "reconcile_end",
            outcome=outcome,
            state=state,
            elapsed_s=round(elapsed_s, 2),
        )
