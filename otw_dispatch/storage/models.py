"""
Data models for storage layer.

Defines delivery requests and their append-only event history.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from otw_dispatch.core.lifecycle import RequestStatus
from otw_dispatch.core.pricing import MembershipTier, ServiceType


class EventType(str, Enum):
    """Audit event kinds. Every status but DRAFT, plus free-text notes."""
    SUBMITTED = "SUBMITTED"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NOTE = "NOTE"

    @classmethod
    def for_status(cls, status: RequestStatus) -> "EventType":
        return cls(status.value)


@dataclass(frozen=True)
class DeliveryRequest:
    """A single delivery job moving through the lifecycle.

    `quoted_price` is fixed when the request is submitted and never
    recomputed. `version` increases by one on every committed transition.
    """
    id: str
    requester_id: str
    status: RequestStatus
    pickup: str
    dropoff: str
    service_type: ServiceType
    tier: MembershipTier
    quoted_price: Decimal
    miles: float
    created_at: datetime
    updated_at: datetime
    driver_id: Optional[str] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requesterId": self.requester_id,
            "status": self.status.value,
            "driverId": self.driver_id,
            "pickup": self.pickup,
            "dropoff": self.dropoff,
            "serviceType": self.service_type.value,
            "tier": self.tier.value,
            "quotedPrice": float(self.quoted_price),
            "miles": self.miles,
            "version": self.version,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class RequestEvent:
    """Immutable audit record of an action taken on a request.

    Events are append-only: once written they are never modified or deleted.
    `seq` is the 1-based position within the owning request's history.
    """
    id: str
    request_id: str
    seq: int
    event_type: EventType
    message: str
    created_at: datetime

    @property
    def status(self) -> Optional[RequestStatus]:
        """Status this event moved the request to, or None for notes."""
        if self.event_type is EventType.NOTE:
            return None
        return RequestStatus(self.event_type.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requestId": self.request_id,
            "seq": self.seq,
            "eventType": self.event_type.value,
            "message": self.message,
            "createdAt": self.created_at.isoformat(),
        }
