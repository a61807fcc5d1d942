"""
promptforge/features/notifications/models.py

Operational notification envelope.

build_envelope validates an inbound request body and produces an immutable
NotificationEnvelope with a server-assigned id and timestamp. Escalation is
always NONE here; raising it is the dispatcher's escalation rules' job.
"""

import secrets
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from promptforge.core.errors import ValidationError


class NotificationType(str, Enum):
    SECURITY = "security"
    PERFORMANCE = "performance"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


class NotificationSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EscalationLevel(str, Enum):
    NONE = "none"
    TEAM_LEAD = "team_lead"
    DEVOPS = "devops"
    SECURITY = "security"
    EMERGENCY = "emergency"


REQUIRED_FIELDS: Tuple[str, ...] = ("type", "severity", "title", "message", "source")

_ID_ALPHABET = string.ascii_lowercase + string.digits


class NotificationEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: NotificationType
    severity: NotificationSeverity
    title: str
    message: str
    source: str
    timestamp: datetime
    escalation_level: EscalationLevel = EscalationLevel.NONE
    tags: Tuple[str, ...] = Field(default_factory=tuple)
    details: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_row(self) -> Dict[str, Any]:
        """Row shape for the backend's notifications table."""
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "details": self.details,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "escalation_level": self.escalation_level.value,
            "tags": list(self.tags),
            "metadata": self.metadata,
        }


class MissingFieldsError(ValidationError):
    code = "missing_required_fields"

    def __init__(self, received: List[str]):
        super().__init__(
            "Missing required fields",
            extra={"required": list(REQUIRED_FIELDS), "received": list(received)},
        )
        self.received = list(received)


class InvalidEnumValueError(ValidationError):
    code = "invalid_enum_value"

    def __init__(self, field: str, received: Any, valid_values: List[str]):
        super().__init__(
            f"Invalid notification {field}",
            extra={"field": field, "received": received, "valid_values": list(valid_values)},
        )
        self.field = field


def new_notification_id(now_ms: Optional[int] = None) -> str:
    """notif_<epoch ms>_<9 random base36 chars>"""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"notif_{ms}_{suffix}"


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _coerce_tags(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(str(tag) for tag in raw if tag is not None)


def build_envelope(body: Any, *, now: Optional[datetime] = None) -> NotificationEnvelope:
    """Validate a request body and build an envelope.

    Raises:
        MissingFieldsError: any of type/severity/title/message/source absent or empty
        InvalidEnumValueError: type or severity outside the closed enumerations
    """
    data: Mapping[str, Any] = body if isinstance(body, Mapping) else {}
    received = [str(key) for key in data.keys()]

    if any(_is_missing(data.get(name)) for name in REQUIRED_FIELDS):
        raise MissingFieldsError(received)

    try:
        ntype = NotificationType(data["type"])
    except ValueError:
        raise InvalidEnumValueError("type", data["type"], [t.value for t in NotificationType])

    try:
        severity = NotificationSeverity(data["severity"])
    except ValueError:
        raise InvalidEnumValueError("severity", data["severity"], [s.value for s in NotificationSeverity])

    timestamp = now or datetime.now(timezone.utc)
    metadata = data.get("metadata")
    return NotificationEnvelope(
        id=new_notification_id(int(timestamp.timestamp() * 1000)),
        type=ntype,
        severity=severity,
        title=str(data["title"]),
        message=str(data["message"]),
        source=str(data["source"]),
        timestamp=timestamp,
        escalation_level=EscalationLevel.NONE,
        tags=_coerce_tags(data.get("tags")),
        details=data.get("details"),
        metadata=metadata if isinstance(metadata, dict) else None,
    )
