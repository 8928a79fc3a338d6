"""
Tests for RequestService orchestration.

Covers the request lifecycle end to end against a real SQLite file,
throttling of submissions, and concurrent writers racing on one request.
"""

import json
import os
import tempfile
import threading
from dataclasses import replace
from decimal import Decimal

import pytest

from otw_dispatch.config.loader import RateLimitConfig
from otw_dispatch.core.errors import (
    ConflictError,
    InvalidConfig,
    InvalidTransition,
    NotFound,
    RateLimited,
)
from otw_dispatch.core.lifecycle import RequestStatus, replay_status
from otw_dispatch.core.rate_limiter import RateLimiter, get_rate_limiter
from otw_dispatch.service import request_service
from otw_dispatch.service import RequestService
from otw_dispatch.storage.models import EventType
from otw_dispatch.storage.repository import RequestRepository, initialize_schema


class RacingRepository(RequestRepository):
    """Holds readers at a barrier so two writers observe the same state."""

    def __init__(self, db_path: str, parties: int):
        super().__init__(db_path)
        self.barrier = threading.Barrier(parties)
        self.racing = False

    def get_request(self, request_id):
        request = super().get_request(request_id)
        if self.racing:
            self.barrier.wait(timeout=5)
        return request


class RecordingLogger:
    """Collects warning events; other levels are ignored."""

    def __init__(self):
        self.warnings = []

    def warning(self, event, **kw):
        self.warnings.append((event, kw))

    def info(self, event, **kw):
        pass


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def service(db_path):
    return RequestService(
        repository=RequestRepository(db_path),
        rate_limiter=RateLimiter(clock=lambda: 0),
    )


def submit(service, requester="cust_1", **kwargs):
    params = dict(pickup="12 Main St", dropoff="99 Oak Ave", service_type="FRAGILE", miles=10, tier="PLUS")
    params.update(kwargs)
    return service.submit(requester, **params)


class TestSubmit:
    """Test request submission."""

    def test_submit_creates_submitted_request(self, service):
        request = submit(service)
        assert request.status is RequestStatus.SUBMITTED
        assert request.quoted_price == Decimal("20.25")
        assert request.driver_id is None

        stored = service.get(request.id)
        assert stored == request
        assert [e.event_type for e in service.history(request.id)] == [EventType.SUBMITTED]

    def test_record_is_json_serializable(self, service):
        record = submit(service).to_dict()
        decoded = json.loads(json.dumps(record))
        assert decoded["status"] == "SUBMITTED"
        assert decoded["quotedPrice"] == 20.25
        assert decoded["serviceType"] == "FRAGILE"

    @pytest.mark.parametrize("field,value", [
        ("pickup", ""),
        ("dropoff", "   "),
        ("miles", -1),
        ("service_type", "PARCEL"),
        ("tier", "GOLD"),
    ])
    def test_invalid_input(self, service, field, value):
        with pytest.raises(InvalidConfig):
            submit(service, **{field: value})
        assert service.list_requests() == []

    def test_empty_requester(self, service):
        with pytest.raises(InvalidConfig):
            submit(service, requester="")

    def test_rate_limited(self, db_path):
        service = RequestService(
            repository=RequestRepository(db_path),
            rate_limiter=RateLimiter(clock=lambda: 0),
            rate_limit=RateLimitConfig(interval_ms=1000, max_requests=2),
        )
        submit(service)
        submit(service)

        with pytest.raises(RateLimited) as exc_info:
            submit(service)
        assert exc_info.value.retry_after_ms == 1000
        assert exc_info.value.code == "rate_limited"
        assert len(service.list_requests()) == 2

        # other requesters are unaffected
        assert submit(service, requester="cust_2").status is RequestStatus.SUBMITTED

    def test_injected_limiter_is_used(self, db_path):
        limiter = RateLimiter(clock=lambda: 0, max_keys=3)
        service = RequestService(repository=RequestRepository(db_path), rate_limiter=limiter)
        assert service.rate_limiter is limiter

        submit(service)
        assert len(limiter) == 1

    def test_default_limiter_is_process_wide(self, db_path):
        service = RequestService(repository=RequestRepository(db_path))
        assert service.rate_limiter is get_rate_limiter()

    def test_invalid_input_does_not_consume_tokens(self, db_path):
        service = RequestService(
            repository=RequestRepository(db_path),
            rate_limiter=RateLimiter(clock=lambda: 0),
            rate_limit=RateLimitConfig(interval_ms=1000, max_requests=1),
        )
        with pytest.raises(InvalidConfig):
            submit(service, miles=-3)
        assert submit(service).status is RequestStatus.SUBMITTED


class TestAssign:
    """Test driver assignment."""

    def test_assign(self, service):
        request = submit(service)
        assigned = service.assign(request.id, "drv_1")
        assert assigned.status is RequestStatus.ASSIGNED
        assert assigned.driver_id == "drv_1"
        assert assigned.version == request.version + 1

    def test_cannot_assign_twice(self, service):
        request = submit(service)
        service.assign(request.id, "drv_1")
        with pytest.raises(InvalidTransition):
            service.assign(request.id, "drv_2")
        assert service.get(request.id).driver_id == "drv_1"

    def test_cannot_assign_cancelled(self, service):
        request = submit(service)
        service.cancel(request.id)
        with pytest.raises(InvalidTransition, match="only SUBMITTED requests can be assigned"):
            service.assign(request.id, "drv_1")

    def test_unknown_request(self, service):
        with pytest.raises(NotFound) as exc_info:
            service.assign("missing", "drv_1")
        assert exc_info.value.request_id == "missing"

    def test_driver_required(self, service):
        request = submit(service)
        with pytest.raises(InvalidConfig):
            service.assign(request.id, "")


class TestAdvance:
    """Test lifecycle progression through the service."""

    def test_full_lifecycle_and_audit_log(self, service):
        """Event log matches the path taken and replays to the stored status."""
        request = submit(service)
        service.assign(request.id, "drv_1")
        for status in ("PICKED_UP", "DELIVERED", "COMPLETED"):
            service.advance(request.id, status)

        final = service.get(request.id)
        events = service.history(request.id)
        event_types = [e.event_type.value for e in events]

        assert final.status is RequestStatus.COMPLETED
        assert event_types == ["SUBMITTED", "ASSIGNED", "PICKED_UP", "DELIVERED", "COMPLETED"]
        assert replay_status(event_types) is final.status
        assert service.verify_history(request.id) is True
        assert [e.seq for e in events] == [1, 2, 3, 4, 5]
        assert all(a.created_at <= b.created_at for a, b in zip(events, events[1:]))

    def test_quoted_price_is_immutable(self, service):
        request = submit(service)
        service.assign(request.id, "drv_1")
        service.advance(request.id, RequestStatus.PICKED_UP)
        assert service.get(request.id).quoted_price == request.quoted_price

    def test_cannot_skip_states(self, service):
        request = submit(service)
        with pytest.raises(InvalidTransition):
            service.advance(request.id, "DELIVERED")
        assert service.get(request.id).status is RequestStatus.SUBMITTED
        assert len(service.history(request.id)) == 1

    def test_assigned_only_through_assign(self, service):
        request = submit(service)
        with pytest.raises(InvalidTransition, match="Use assign"):
            service.advance(request.id, RequestStatus.ASSIGNED)

    def test_unknown_status(self, service):
        request = submit(service)
        with pytest.raises(InvalidTransition):
            service.advance(request.id, "TELEPORTED")

    def test_terminal_states_absorb(self, service):
        request = submit(service)
        service.cancel(request.id, "customer changed their mind")
        for status in RequestStatus:
            with pytest.raises(InvalidTransition):
                service.advance(request.id, status)

    def test_cannot_cancel_after_delivery(self, service):
        request = submit(service)
        service.assign(request.id, "drv_1")
        service.advance(request.id, "PICKED_UP")
        service.advance(request.id, "DELIVERED")
        with pytest.raises(InvalidTransition):
            service.cancel(request.id)

    def test_cancel_message_recorded(self, service):
        request = submit(service)
        service.cancel(request.id, "customer changed their mind")
        last = service.history(request.id)[-1]
        assert last.event_type is EventType.CANCELLED
        assert last.message == "customer changed their mind"

    def test_unknown_request(self, service):
        with pytest.raises(NotFound):
            service.advance("missing", "CANCELLED")


class TestNotesAndQueries:
    """Test notes, listing, and history verification."""

    def test_notes_do_not_change_status(self, service):
        request = submit(service)
        service.add_note(request.id, "gate code 1234")
        service.assign(request.id, "drv_1")

        assert [e.event_type for e in service.history(request.id)] == [
            EventType.SUBMITTED, EventType.NOTE, EventType.ASSIGNED
        ]
        assert service.verify_history(request.id) is True

    def test_empty_note_rejected(self, service):
        request = submit(service)
        with pytest.raises(InvalidConfig):
            service.add_note(request.id, " ")

    def test_list_by_status(self, service):
        first = submit(service)
        submit(service)
        service.cancel(first.id)

        assert [r.id for r in service.list_requests("CANCELLED")] == [first.id]
        assert len(service.list_requests()) == 2
        with pytest.raises(InvalidConfig):
            service.list_requests("LOST")

    def test_history_of_unknown_request(self, service):
        with pytest.raises(NotFound):
            service.history("missing")

    def test_quote_has_no_side_effects(self, service):
        assert service.quote(10, "FRAGILE", "PLUS") == Decimal("20.25")
        assert service.quote_breakdown(10, "FRAGILE", "PLUS").total == Decimal("23.24")
        assert service.list_requests() == []


class TestConcurrency:
    """Test concurrent writers racing on the same request."""

    def test_concurrent_advance_exactly_one_wins(self, db_path):
        repository = RacingRepository(db_path, parties=2)
        service = RequestService(repository=repository, rate_limiter=RateLimiter(clock=lambda: 0))
        request = submit(service)
        service.assign(request.id, "drv_1")

        outcomes = []
        lock = threading.Lock()

        def worker():
            try:
                result = service.advance(request.id, "PICKED_UP")
            except ConflictError as e:
                result = e
            with lock:
                outcomes.append(result)

        repository.racing = True
        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        repository.racing = False

        conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
        successes = [o for o in outcomes if not isinstance(o, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert conflicts[0].retryable is True
        assert successes[0].status is RequestStatus.PICKED_UP

        event_types = [e.event_type for e in service.history(request.id)]
        assert event_types.count(EventType.PICKED_UP) == 1
        assert service.verify_history(request.id) is True

    def test_conflict_is_logged_and_reraised(self, service, monkeypatch):
        request = submit(service)
        service.assign(request.id, "drv_1")
        stale = replace(service.get(request.id), version=0)
        monkeypatch.setattr(service.repository, "get_request", lambda request_id: stale)

        recorder = RecordingLogger()
        monkeypatch.setattr(request_service, "logger", recorder)

        with pytest.raises(ConflictError):
            service.advance(request.id, "PICKED_UP")

        assert recorder.warnings == [(
            "request.conflict",
            {"request_id": request.id, "from_status": "ASSIGNED", "to_status": "PICKED_UP", "version": 0},
        )]
        monkeypatch.undo()
        assert service.get(request.id).status is RequestStatus.ASSIGNED
