"""
Audit Event Logging Module

Structured JSON events for everything an operator may need to review after
the fact:
- Refresh cycles (completed, failed, abandoned)
- Source fetch failures
- Skipped malformed records
- Rejected screening queries

SECURITY: Caller-supplied text is sanitized before logging.
"""

import json
import logging
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from log_utils import sanitize_for_logging


@dataclass
class AuditEvent:
    """Structured audit event"""
    event_type: str  # e.g., REFRESH_COMPLETED, SOURCE_FETCH_FAILED, QUERY_REJECTED
    severity: str  # INFO, WARNING, ERROR
    source: str = ""
    error_code: str = ""
    message: str = ""
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'source': self.source,
            'error_code': self.error_code,
            'message': self.message,
            'context': self.context
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class AuditLogger:
    """Writes audit events as JSON lines to the 'audit' logger

    Events also propagate to the root logger so they show up wherever the
    application log goes.
    """

    def __init__(self, log_file: Optional[str] = None, logger_name: str = 'audit'):
        """Initialize audit logger

        Args:
            log_file: Optional dedicated audit log file
            logger_name: Name of the underlying logger
        """
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(logging.INFO)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        if log_file:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding='utf-8')
            file_handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(file_handler)

    def _emit(self, event: AuditEvent) -> AuditEvent:
        level = getattr(logging, event.severity, logging.INFO)
        self.logger.log(level, event.to_json())
        return event

    def log_refresh_completed(self, generation: int, entity_count: int,
                              duration_ms: float, context: Optional[Dict[str, Any]] = None) -> AuditEvent:
        data = {'generation': generation, 'entity_count': entity_count,
                'duration_ms': round(duration_ms, 2)}
        data.update(context or {})
        return self._emit(AuditEvent(
            event_type="REFRESH_COMPLETED",
            severity="WARNING" if data.get('source_errors') else "INFO",
            message=f"Published generation {generation}",
            context=data
        ))

    def log_refresh_failed(self, reason: str, consecutive_failures: int,
                           retry_in_seconds: float) -> AuditEvent:
        return self._emit(AuditEvent(
            event_type="REFRESH_FAILED",
            severity="ERROR",
            message=sanitize_for_logging(reason),
            context={'consecutive_failures': consecutive_failures,
                     'retry_in_seconds': round(retry_in_seconds, 1)}
        ))

    def log_refresh_abandoned(self, stage: str) -> AuditEvent:
        return self._emit(AuditEvent(
            event_type="REFRESH_ABANDONED",
            severity="WARNING",
            message=f"Refresh cycle abandoned during {stage}"
        ))

    def log_source_failure(self, source: str, reason: str) -> AuditEvent:
        return self._emit(AuditEvent(
            event_type="SOURCE_FETCH_FAILED",
            severity="WARNING",
            source=source,
            message=sanitize_for_logging(reason)
        ))

    def log_records_skipped(self, source: str, reasons: Dict[str, int]) -> AuditEvent:
        return self._emit(AuditEvent(
            event_type="RECORD_SKIPPED",
            severity="WARNING",
            source=source,
            message=f"{sum(reasons.values())} malformed records skipped",
            context={'reasons': reasons}
        ))

    def log_query_rejected(self, field: str, error_code: str, input_value: str) -> AuditEvent:
        sanitized = sanitize_for_logging(input_value)
        if len(sanitized) > 50:
            sanitized = sanitized[:50] + "...(truncated)"
        return self._emit(AuditEvent(
            event_type="QUERY_REJECTED",
            severity="WARNING",
            error_code=error_code,
            message=f"Invalid {field}",
            context={'field': field, 'input': sanitized}
        ))


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(log_file: Optional[str] = None) -> AuditLogger:
    """Get or create the global audit logger instance"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(log_file=log_file)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)"""
    global _audit_logger
    _audit_logger = None
