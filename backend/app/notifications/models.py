"""
models.py — Shared data structures for the notification fan-out.

Defines:
    • NotificationPriority — urgency levels
    • DeliveryChannel      — delivery channel enum
    • DeliveryStatus       — per-recipient, per-channel outcome
    • Recipient            — a target person with contact info
    • NotificationMessage  — the message to deliver
    • DeliveryAttempt      — single send attempt record
    • RecipientDeliveryRecord — one recipient across all channels
    • FanoutResult         — final delivery summary

═══════════════════════════════════════════════════════════════════════════
PRIORITY LEVELS
═══════════════════════════════════════════════════════════════════════════

    Source event                 Priority     Push presentation
    ─────────────────────        ─────────    ───────────────────────
    Guardian start / arrival     ROUTINE      default sound
    Follow Me start / stop       ROUTINE      default sound
    Safety alert (non-critical)  URGENT       high, sticky
    Guardian route deviation     URGENT       high, sticky
    SOS / critical safety alert  CRITICAL     high, sticky, max volume

Priority never changes the channel set: every channel a recipient has
contact info for is attempted. It only shapes how providers present the
message (Expo priority, email subject prefix).

═══════════════════════════════════════════════════════════════════════════
CHANNEL SELECTION
═══════════════════════════════════════════════════════════════════════════

    push   — recipient has push_token
    sms    — recipient has phone
    email  — recipient has email

A recipient with none of these produces an empty record and counts as
unreached.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class NotificationPriority(IntEnum):
    """Urgency levels — integer ordering enables comparison."""
    ROUTINE  = 1
    ELEVATED = 2
    URGENT   = 3
    CRITICAL = 4


class DeliveryChannel(str, Enum):
    """Available delivery channels, in dispatch order."""
    PUSH  = "push"
    SMS   = "sms"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    """Outcome of one delivery attempt."""
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"   # channel not applicable


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"NTF-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Recipient:
    """
    A person to notify.

    Attributes
    ----------
    recipient_id : str
        Trusted-contact id or user id.
    name : str
        Display name.
    phone : str | None
        E.164 phone number for SMS.
    email : str | None
        Email address.
    push_token : str | None
        Expo push token.
    """
    recipient_id: str
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None

    @property
    def channels(self) -> List[DeliveryChannel]:
        """Channels this recipient can be reached on."""
        out: List[DeliveryChannel] = []
        if self.push_token:
            out.append(DeliveryChannel.PUSH)
        if self.phone:
            out.append(DeliveryChannel.SMS)
        if self.email:
            out.append(DeliveryChannel.EMAIL)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "has_push_token": bool(self.push_token),
        }


@dataclass
class NotificationMessage:
    """The message to deliver, with a title and an SMS-friendly body."""
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.ROUTINE
    message_id: str = field(default_factory=_generate_id)
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "title": self.title,
            "body": self.body,
            "priority": self.priority.name,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryAttempt:
    """Record of one delivery to one recipient via one channel."""
    channel: DeliveryChannel
    recipient_id: str
    status: DeliveryStatus = DeliveryStatus.FAILED
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "retry_count": self.retry_count,
            "error_message": self.error_message,
        }


@dataclass
class RecipientDeliveryRecord:
    """Aggregated delivery status for one recipient across all channels."""
    recipient_id: str
    name: str
    channels_attempted: List[DeliveryChannel] = field(default_factory=list)
    channels_delivered: List[DeliveryChannel] = field(default_factory=list)
    channels_failed: List[DeliveryChannel] = field(default_factory=list)
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    @property
    def is_reached(self) -> bool:
        """True if at least one channel succeeded."""
        return len(self.channels_delivered) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "is_reached": self.is_reached,
            "channels_attempted": [c.value for c in self.channels_attempted],
            "channels_delivered": [c.value for c in self.channels_delivered],
            "channels_failed": [c.value for c in self.channels_failed],
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class FanoutResult:
    """Final delivery report for one fan-out."""
    message: NotificationMessage
    records: List[RecipientDeliveryRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def total_recipients(self) -> int:
        return len(self.records)

    @property
    def recipients_reached(self) -> int:
        return sum(1 for r in self.records if r.is_reached)

    @property
    def recipients_failed(self) -> int:
        return self.total_recipients - self.recipients_reached

    @property
    def total_attempts(self) -> int:
        return sum(len(r.attempts) for r in self.records)

    @property
    def failed_attempts(self) -> int:
        return sum(
            1 for r in self.records for a in r.attempts
            if a.status == DeliveryStatus.FAILED
        )

    def record_for(self, recipient_id: str) -> Optional[RecipientDeliveryRecord]:
        for record in self.records:
            if record.recipient_id == recipient_id:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message.message_id,
            "priority": self.message.priority.name,
            "total_recipients": self.total_recipients,
            "recipients_reached": self.recipients_reached,
            "recipients_failed": self.recipients_failed,
            "total_attempts": self.total_attempts,
            "failed_attempts": self.failed_attempts,
            "started_at": self.started_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "records": [r.to_dict() for r in self.records],
        }
