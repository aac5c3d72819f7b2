"""Audit logging for schema-changing IndexPilot operations.

Every DDL statement the executor issues, every backup reference it captures
and every optimization cycle is recorded as an ``AuditEvent``. Events are kept
in a bounded in-memory trail and mirrored to the structured log.

Classes:
    AuditEventType: Types of audit events
    AuditSeverity: Severity levels
    AuditEvent: Structured audit event representation
    AuditLogger: Main audit logging interface

Example:
    >>> audit = AuditLogger("executor")
    >>> audit.log_ddl(
    ...     AuditEventType.INDEX_CREATE,
    ...     table="orders",
    ...     index="idx_orders_customer_id",
    ...     sql="CREATE INDEX `idx_orders_customer_id` ON `orders` (`customer_id`)",
    ...     outcome="success",
    ... )
"""

import json
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .structured import StructuredLogger

DEFAULT_TRAIL_SIZE = 1000


class AuditEventType(Enum):
    """Types of audit events."""

    INDEX_CREATE = "index.create"
    INDEX_DROP = "index.drop"
    BACKUP_CREATE = "backup.create"
    CYCLE_START = "cycle.start"
    CYCLE_COMPLETE = "cycle.complete"
    CYCLE_FAILED = "cycle.failed"
    CUSTOM = "custom"


class AuditSeverity(Enum):
    """Severity levels for audit events."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """Structured audit event representation.

    Attributes:
        event_id: Unique event identifier
        event_type: Type of audit event
        timestamp: Event timestamp (ISO format, UTC)
        severity: Event severity level
        actor: Component that triggered the event
        resource: Resource acted upon (``table`` or ``table.index``)
        action: Specific action performed
        outcome: success, skipped, failed or cancelled
        details: Additional event details such as the SQL text
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuditEventType = AuditEventType.CUSTOM
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    severity: AuditSeverity = AuditSeverity.MEDIUM
    actor: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    outcome: str = "unknown"
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.event_type, str):
            try:
                self.event_type = AuditEventType(self.event_type)
            except ValueError:
                self.event_type = AuditEventType.CUSTOM

        if isinstance(self.severity, str):
            try:
                self.severity = AuditSeverity(self.severity)
            except ValueError:
                self.severity = AuditSeverity.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        return data

    def to_json(self) -> str:
        """Convert audit event to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        return (
            f"AuditEvent("
            f"type={self.event_type.value!r}, "
            f"resource={self.resource!r}, "
            f"outcome={self.outcome!r})"
        )


class AuditLogger:
    """Audit trail for schema-changing operations.

    Attributes:
        name: Logger name
        logger: Underlying structured logger

    Example:
        >>> audit = AuditLogger("optimizer", trail_size=100)
        >>> audit.log_event(AuditEventType.CYCLE_START, action="run_cycle")
        >>> len(audit)
        1
    """

    def __init__(
        self,
        name: str,
        *,
        trail_size: int = DEFAULT_TRAIL_SIZE,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        """Initialize audit logger.

        Args:
            name: Logger name
            trail_size: Maximum number of events kept in memory
            logger: Custom structured logger instance
        """
        self.name = name
        self.logger = logger or StructuredLogger(f"audit.{name}")
        self._events: Deque[AuditEvent] = deque(maxlen=trail_size)
        self._event_handlers: List[Callable[[AuditEvent], None]] = []

    def add_event_handler(self, handler: Callable[[AuditEvent], None]) -> None:
        """Add a callback invoked for each audit event."""
        self._event_handlers.append(handler)

    def log_event(
        self,
        event_type: Union[AuditEventType, str],
        *,
        actor: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        outcome: str = "success",
        severity: Union[AuditSeverity, str] = AuditSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Record an audit event.

        Args:
            event_type: Type of audit event
            actor: Component that triggered the event
            resource: Resource being acted upon
            action: Specific action performed
            outcome: Result of the action
            severity: Event severity level
            details: Additional event details

        Returns:
            Created AuditEvent instance
        """
        event = AuditEvent(
            event_type=event_type,
            actor=actor or self.name,
            resource=resource,
            action=action,
            outcome=outcome,
            severity=severity,
            details=details or {},
        )

        self._events.append(event)

        log_method = self.logger.info if outcome != "failed" else self.logger.warning
        log_method(f"Audit event: {action or event.event_type.value}", audit=event.to_dict())

        for handler in self._event_handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "Audit event handler failed",
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

        return event

    def log_ddl(
        self,
        event_type: AuditEventType,
        *,
        table: str,
        index: Optional[str],
        sql: str,
        outcome: str,
        error: Optional[str] = None,
        **details: Any,
    ) -> AuditEvent:
        """Record a DDL statement issued against the managed schema.

        Drops are audited with high severity since they remove an access path.
        """
        severity = AuditSeverity.HIGH if event_type is AuditEventType.INDEX_DROP else AuditSeverity.MEDIUM
        resource = f"{table}.{index}" if index else table
        event_details: Dict[str, Any] = {"sql": sql, **details}
        if error:
            event_details["error"] = error

        return self.log_event(
            event_type,
            resource=resource,
            action=event_type.value,
            outcome=outcome,
            severity=severity,
            details=event_details,
        )

    def get_events(
        self,
        *,
        event_type: Optional[Union[AuditEventType, str]] = None,
        resource: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        """Query the trail, newest first.

        Args:
            event_type: Filter by event type
            resource: Filter by resource
            outcome: Filter by outcome
            limit: Maximum number of events to return

        Returns:
            List of matching audit events
        """
        if isinstance(event_type, str):
            try:
                event_type = AuditEventType(event_type)
            except ValueError:
                return []

        events = [
            e for e in reversed(self._events)
            if (event_type is None or e.event_type == event_type)
            and (resource is None or e.resource == resource)
            and (outcome is None or e.outcome == outcome)
        ]

        return events[:limit] if limit else events

    def get_statistics(self) -> Dict[str, Any]:
        """Get counts of retained events by type and outcome."""
        type_counts: Dict[str, int] = {}
        outcome_counts: Dict[str, int] = {}
        for event in self._events:
            type_counts[event.event_type.value] = type_counts.get(event.event_type.value, 0) + 1
            outcome_counts[event.outcome] = outcome_counts.get(event.outcome, 0) + 1

        return {
            "total_events": len(self._events),
            "event_types": type_counts,
            "outcomes": outcome_counts,
        }

    def export_events(self) -> str:
        """Export the retained trail as a JSON array, oldest first."""
        return json.dumps([e.to_dict() for e in self._events], default=str)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    def __repr__(self) -> str:
        return f"AuditLogger(name={self.name!r}, events={len(self._events)})"
