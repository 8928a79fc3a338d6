"""
Delivery request orchestration.

The single gatekeeper between callers and persistence: every status change is
validated against the lifecycle before it is written, and every write pairs
the new status with its audit event.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

import structlog

from ..config.loader import RateLimitConfig
from ..core.errors import ConflictError, InvalidConfig, InvalidTransition, NotFound, RateLimited
from ..core.lifecycle import INITIAL_STATUS, RequestStatus, can_transition, coerce_status, replay_status
from ..core.pricing import (
    DEFAULT_PRICING,
    MembershipTier,
    Number,
    PriceBreakdown,
    PricingConfig,
    coerce_service_type,
    coerce_tier,
    estimate_price,
    price_breakdown,
)
from ..core.rate_limiter import RateLimiter, get_rate_limiter
from ..storage.models import DeliveryRequest, EventType, RequestEvent
from ..storage.repository import RequestStore

logger = structlog.get_logger(__name__)


class RequestService:
    """Submits, assigns and advances delivery requests.

    Mutations are atomic: the status column and its audit event are committed
    together or not at all. Concurrent writers against the same request are
    resolved by the store's version check; the loser gets ConflictError.
    """

    def __init__(
        self,
        repository: RequestStore,
        rate_limiter: Optional[RateLimiter] = None,
        pricing: PricingConfig = DEFAULT_PRICING,
        rate_limit: Optional[RateLimitConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize the service.

        Args:
            repository: Persistence collaborator
            rate_limiter: Limiter for submissions (defaults to the process-wide one)
            pricing: Pricing constants used for quotes
            rate_limit: Submission throttle settings
            clock: Returns the current UTC time
        """
        self.repository = repository
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_rate_limiter()
        self.pricing = pricing
        self.rate_limit = rate_limit or RateLimitConfig()
        self._clock = clock

    def quote(self, miles: Number, service_type: object, tier: object) -> Decimal:
        """Price a delivery without persisting anything."""
        return estimate_price(miles, service_type, tier, self.pricing)

    def quote_breakdown(self, miles: Number, service_type: object, tier: object) -> PriceBreakdown:
        return price_breakdown(miles, service_type, tier, self.pricing)

    def submit(
        self,
        requester_id: str,
        pickup: str,
        dropoff: str,
        service_type: object,
        miles: Number = 0.0,
        tier: object = MembershipTier.BASIC,
    ) -> DeliveryRequest:
        """Create a request and move it from DRAFT to SUBMITTED in one step.

        The price is quoted here, once, and never recomputed.

        Args:
            requester_id: Identity of the customer; also the throttle key
            pickup: Pickup location descriptor
            dropoff: Dropoff location descriptor
            service_type: ServiceType or its name
            miles: Trip distance, must be >= 0
            tier: Requester's membership tier at quote time

        Returns:
            The stored request in SUBMITTED status

        Raises:
            RateLimited: If the requester is submitting too often
            InvalidConfig: If any input is out of domain
            PersistenceError: If the store fails
        """
        if not requester_id or not requester_id.strip():
            raise InvalidConfig("requester_id is required and cannot be empty")
        if not pickup or not pickup.strip():
            raise InvalidConfig("pickup is required and cannot be empty")
        if not dropoff or not dropoff.strip():
            raise InvalidConfig("dropoff is required and cannot be empty")

        service = coerce_service_type(service_type)
        membership = coerce_tier(tier)
        quoted_price = self.quote(miles, service, membership)

        key = f"submit:{requester_id}"
        decision = self.rate_limiter.attempt(key, self.rate_limit.interval_ms, self.rate_limit.max_requests)
        if not decision.allowed:
            logger.warning("request.submit_throttled", requester_id=requester_id, retry_after_ms=decision.retry_after_ms)
            raise RateLimited(key, decision.retry_after_ms)

        if not can_transition(INITIAL_STATUS, RequestStatus.SUBMITTED):
            raise InvalidTransition(INITIAL_STATUS, RequestStatus.SUBMITTED)

        now = self._clock()
        request = DeliveryRequest(
            id=uuid.uuid4().hex,
            requester_id=requester_id,
            status=RequestStatus.SUBMITTED,
            pickup=pickup,
            dropoff=dropoff,
            service_type=service,
            tier=membership,
            quoted_price=quoted_price,
            miles=float(miles),
            created_at=now,
            updated_at=now,
        )
        stored = self.repository.create_request(
            request,
            EventType.SUBMITTED,
            f"Request submitted by {requester_id}, quoted at {quoted_price}",
        )
        logger.info(
            "request.submitted",
            request_id=stored.id,
            requester_id=requester_id,
            service_type=service.value,
            quoted_price=str(quoted_price),
        )
        return stored

    def assign(self, request_id: str, driver_id: str) -> DeliveryRequest:
        """Assign a driver to a SUBMITTED request.

        Raises:
            NotFound: If the request does not exist
            InvalidTransition: If the request is not SUBMITTED
            ConflictError: If a concurrent change committed first
        """
        if not driver_id or not driver_id.strip():
            raise InvalidConfig("driver_id is required and cannot be empty")

        current = self.get(request_id)
        if current.status is not RequestStatus.SUBMITTED:
            raise InvalidTransition(
                current.status,
                RequestStatus.ASSIGNED,
                f"Request {request_id} is {current.status.value}; only SUBMITTED requests can be assigned",
            )

        updated = self._transition(
            current, RequestStatus.ASSIGNED, f"Assigned to driver {driver_id}", driver_id=driver_id
        )
        logger.info("request.assigned", request_id=request_id, driver_id=driver_id)
        return updated

    def advance(self, request_id: str, to_status: object, message: Optional[str] = None) -> DeliveryRequest:
        """Move a request along the lifecycle.

        ASSIGNED is only reachable through `assign`, which records the driver.

        Raises:
            NotFound: If the request does not exist
            InvalidTransition: If the lifecycle does not allow the change
            ConflictError: If a concurrent change committed first
        """
        current = self.get(request_id)
        target = coerce_status(to_status)

        if target is None or not can_transition(current.status, target):
            raise InvalidTransition(current.status, target if target is not None else to_status)
        if target is RequestStatus.ASSIGNED:
            raise InvalidTransition(
                current.status, target, "Use assign() to move a request to ASSIGNED"
            )

        updated = self._transition(
            current, target, message or f"Status changed from {current.status.value} to {target.value}"
        )
        logger.info(
            "request.advanced",
            request_id=request_id,
            from_status=current.status.value,
            to_status=target.value,
        )
        return updated

    def cancel(self, request_id: str, reason: Optional[str] = None) -> DeliveryRequest:
        return self.advance(request_id, RequestStatus.CANCELLED, reason or "Request cancelled")

    def add_note(self, request_id: str, message: str) -> RequestEvent:
        """Append a free-text note to the history without changing status."""
        if not message or not message.strip():
            raise InvalidConfig("message is required and cannot be empty")
        return self.repository.append_event(request_id, EventType.NOTE, message)

    def _transition(
        self,
        current: DeliveryRequest,
        new_status: RequestStatus,
        message: str,
        driver_id: Optional[str] = None,
    ) -> DeliveryRequest:
        try:
            return self.repository.transition(
                current.id,
                expected_status=current.status,
                expected_version=current.version,
                new_status=new_status,
                message=message,
                driver_id=driver_id,
            )
        except ConflictError:
            logger.warning(
                "request.conflict",
                request_id=current.id,
                from_status=current.status.value,
                to_status=new_status.value,
                version=current.version,
            )
            raise

    def get(self, request_id: str) -> DeliveryRequest:
        """Fetch a request.

        Raises:
            NotFound: If the request does not exist
        """
        request = self.repository.get_request(request_id)
        if request is None:
            raise NotFound(request_id)
        return request

    def history(self, request_id: str) -> List[RequestEvent]:
        self.get(request_id)
        return self.repository.list_events(request_id)

    def list_requests(self, status: object = None, limit: int = 100) -> List[DeliveryRequest]:
        status_filter = None
        if status is not None:
            status_filter = coerce_status(status)
            if status_filter is None:
                raise InvalidConfig(f"Unknown status {status!r}")
        return self.repository.list_requests(status_filter, limit)

    def verify_history(self, request_id: str) -> bool:
        """Check that replaying the event log reproduces the stored status."""
        request = self.get(request_id)
        events = self.repository.list_events(request_id)
        try:
            replayed = replay_status(event.event_type.value for event in events)
        except InvalidTransition:
            logger.error("request.history_invalid", request_id=request_id)
            return False
        return replayed is request.status
