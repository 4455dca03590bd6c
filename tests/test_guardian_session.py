"""
test_guardian_session.py — Tests for Guardian escort sessions.

Covers:
    • Start: origin resolution, route planning, contact filtering
    • One active session per user (including concurrent starts)
    • Location updates: check-ins, deviation detection, URGENT fan-out
    • The four-attempt deviation scenario (2 contacts × SMS + email)
    • Complete / cancel and terminal-state protection

Run with:
    pytest tests/test_guardian_session.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import List

import pytest

from backend.app.core.errors import (
    NoActiveSessionError,
    NotFoundError,
    RouteCalculationError,
    SessionAlreadyActiveError,
    ValidationError,
)
from backend.app.notifications.models import DeliveryChannel, NotificationPriority
from backend.app.safety.guardian_service import GuardianService
from backend.app.safety.models import (
    CheckInStatus,
    GuardianStatus,
    Location,
    TrustedContact,
    UserProfile,
)
from backend.app.spatial.route_deviation import RouteDeviationDetector, RoutePlanner


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

# Library → Hostel, ~1.1 km due north
ORIGIN = Location(12.9716, 77.5946, address="Main Library")
DESTINATION = Location(12.9816, 77.5946, address="Hostel Block C")
ON_ROUTE = Location(12.9766, 77.5946)
OFF_ROUTE = Location(12.9766, 77.6046)   # ~1.08 km east of the path


def _make_user(store, uid: str = "U1", location: Location = None) -> UserProfile:
    return store.add_user(UserProfile(id=uid, name="Asha Rao", last_known_location=location))


def _make_contact(
    store,
    cid: str,
    owner: str = "U1",
    *,
    phone: str = "+15550101",
    email: str = None,
    notifications_enabled: bool = True,
) -> TrustedContact:
    return store.add_trusted_contact(TrustedContact(
        id=cid, owner_id=owner, name=f"Contact {cid}",
        phone=phone, email=email, notifications_enabled=notifications_enabled,
    ))


async def _start(engine, contacts: List[str] = ("C1", "C2"), **overrides):
    kwargs = dict(
        user_id="U1",
        destination="Hostel Block C",
        destination_coords=DESTINATION,
        estimated_duration_minutes=15,
        trusted_contact_ids=list(contacts),
        current_location=ORIGIN,
    )
    kwargs.update(overrides)
    return await engine.guardian.start(**kwargs)


def _clear_calls(channels) -> None:
    for fake in channels.values():
        fake.calls.clear()


class _FailingPlanner(RoutePlanner):
    name = "failing"

    async def plan(self, origin, destination):
        raise RouteCalculationError("no route", provider=self.name)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Start
# ═══════════════════════════════════════════════════════════════════════════

class TestStart:

    @pytest.mark.asyncio
    async def test_start_session(self, engine, store, clock):
        _make_user(store)
        _make_contact(store, "C1")
        _make_contact(store, "C2")

        session = await _start(engine)

        assert session.status == GuardianStatus.ACTIVE
        assert session.id.startswith("GRD-")
        assert session.estimated_arrival == clock() + timedelta(minutes=15)
        assert [(p.latitude, p.longitude) for p in session.route] == [
            (ORIGIN.latitude, ORIGIN.longitude),
            (DESTINATION.latitude, DESTINATION.longitude),
        ]
        assert len(session.check_ins) == 1
        assert session.check_ins[0].status == CheckInStatus.ON_TIME
        assert (await store.get_active_guardian("U1")).id == session.id

    @pytest.mark.asyncio
    async def test_contacts_notified_and_marked(self, engine, store, channels):
        _make_user(store)
        _make_contact(store, "C1")
        _make_contact(store, "C2", notifications_enabled=False)

        session = await _start(engine)

        assert channels[DeliveryChannel.SMS].recipients() == ["C1"]
        notified = {c.contact_id: c.notified for c in session.trusted_contacts}
        assert notified == {"C1": True, "C2": False}
        assert session.alerts_sent[0].type == "started"

    @pytest.mark.asyncio
    async def test_contact_marked_even_when_delivery_fails(self, engine, store, channels):
        _make_user(store)
        _make_contact(store, "C1")
        channels[DeliveryChannel.SMS].failing.add("C1")

        session = await _start(engine)

        assert [c.notified for c in session.trusted_contacts] == [True]
        assert session.alerts_sent[0].sent_to == ["C1"]

    @pytest.mark.asyncio
    async def test_unknown_contacts_dropped(self, engine, store):
        _make_user(store)
        _make_contact(store, "C1")
        _make_contact(store, "X1", owner="someone-else")

        session = await _start(engine, contacts=["C1", "X1", "nobody", "C1"])

        assert session.contact_ids == ["C1"]

    @pytest.mark.asyncio
    async def test_origin_falls_back_to_last_known_location(self, engine, store):
        _make_user(store, location=ORIGIN)

        session = await _start(engine, contacts=[], current_location=None)

        assert session.route[0].latitude == ORIGIN.latitude

    @pytest.mark.asyncio
    async def test_origin_required(self, engine, store):
        _make_user(store)
        with pytest.raises(ValidationError):
            await _start(engine, current_location=None)
        assert await store.get_active_guardian("U1") is None

    @pytest.mark.asyncio
    async def test_second_start_conflicts(self, engine, store):
        _make_user(store)
        first = await _start(engine, contacts=[])

        with pytest.raises(SessionAlreadyActiveError) as exc:
            await _start(engine, contacts=[])
        assert exc.value.details["session_id"] == first.id

    @pytest.mark.asyncio
    async def test_concurrent_starts_yield_one_session(self, engine, store):
        _make_user(store)

        results = await asyncio.gather(
            *(_start(engine, contacts=[]) for _ in range(5)),
            return_exceptions=True,
        )

        started = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, SessionAlreadyActiveError)]
        assert len(started) == 1
        assert len(conflicts) == 4
        assert len(await store.list_guardian("U1")) == 1

    @pytest.mark.asyncio
    async def test_route_failure_is_502(self, store, fanout, clock):
        from backend.app.core.locks import KeyedLock

        service = GuardianService(store, fanout, KeyedLock(), _FailingPlanner(), clock=clock)
        with pytest.raises(RouteCalculationError) as exc:
            await service.start("U1", "Hostel", DESTINATION, 15, [], current_location=ORIGIN)
        assert exc.value.status_code == 502
        assert await store.get_active_guardian("U1") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("minutes", [0, -5])
    async def test_duration_must_be_positive(self, engine, minutes):
        with pytest.raises(ValidationError):
            await _start(engine, estimated_duration_minutes=minutes)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Location updates
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateLocation:

    @pytest.mark.asyncio
    async def test_on_route_update(self, engine, store, channels):
        _make_user(store)
        _make_contact(store, "C1")
        session = await _start(engine)
        _clear_calls(channels)

        update = await engine.guardian.update_location(session.id, "U1", ON_ROUTE)

        assert not update.deviation.deviated
        assert update.check_in.status == CheckInStatus.ON_TIME
        assert update.fanout is None
        assert len(update.session.check_ins) == 2
        assert update.session.route_deviations == []
        assert channels[DeliveryChannel.SMS].calls == []

    @pytest.mark.asyncio
    async def test_four_attempt_deviation(self, engine, store, channels):
        _make_user(store)
        _make_contact(store, "C1", email="c1@example.edu")
        _make_contact(store, "C2", phone="+15550102", email="c2@example.edu")
        session = await _start(engine)
        _clear_calls(channels)

        update = await engine.guardian.update_location(session.id, "U1", OFF_ROUTE)

        assert update.deviation.deviated
        assert update.deviation.distance_m > 500
        assert update.check_in.status == CheckInStatus.OFF_ROUTE
        assert update.fanout.total_attempts == 4
        assert update.fanout.recipients_reached == 2
        assert update.fanout.message.priority == NotificationPriority.URGENT

        stored = await store.get_guardian(session.id)
        assert len(stored.route_deviations) == 1
        deviation_alerts = [a for a in stored.alerts_sent if a.type == "route_deviation"]
        assert len(deviation_alerts) == 1
        assert sorted(deviation_alerts[0].sent_to) == ["C1", "C2"]
        assert len(channels[DeliveryChannel.SMS].calls) == 2
        assert len(channels[DeliveryChannel.EMAIL].calls) == 2

    @pytest.mark.asyncio
    async def test_each_deviating_update_sends_one_batch(self, engine, store, channels):
        _make_user(store)
        _make_contact(store, "C1")
        session = await _start(engine)
        _clear_calls(channels)

        await engine.guardian.update_location(session.id, "U1", OFF_ROUTE)
        await engine.guardian.update_location(session.id, "U1", ON_ROUTE)
        await engine.guardian.update_location(session.id, "U1", OFF_ROUTE)

        stored = await store.get_guardian(session.id)
        assert len(stored.route_deviations) == 2
        assert len(stored.check_ins) == 4
        assert len(channels[DeliveryChannel.SMS].calls) == 2

    @pytest.mark.asyncio
    async def test_explicit_status_kept(self, engine, store):
        _make_user(store)
        session = await _start(engine, contacts=[])

        update = await engine.guardian.update_location(
            session.id, "U1", OFF_ROUTE, status="delayed", message="Stopped for coffee",
        )

        assert update.check_in.status == CheckInStatus.DELAYED
        assert update.check_in.message == "Stopped for coffee"
        assert update.deviation.deviated

    @pytest.mark.asyncio
    async def test_deviation_threshold_is_configurable(self, store, fanout, clock):
        from backend.app.core.locks import KeyedLock
        from backend.app.spatial.route_deviation import StraightLineRoutePlanner

        service = GuardianService(
            store, fanout, KeyedLock(), StraightLineRoutePlanner(),
            RouteDeviationDetector(threshold_m=2000), clock=clock,
        )
        session = await service.start("U1", "Hostel", DESTINATION, 15, [], current_location=ORIGIN)

        update = await service.update_location(session.id, "U1", OFF_ROUTE)
        assert not update.deviation.deviated

    @pytest.mark.asyncio
    async def test_wrong_user_not_found(self, engine, store):
        _make_user(store)
        session = await _start(engine, contacts=[])
        with pytest.raises(NotFoundError):
            await engine.guardian.update_location(session.id, "U2", ON_ROUTE)

    @pytest.mark.asyncio
    async def test_unknown_session_not_found(self, engine):
        with pytest.raises(NotFoundError):
            await engine.guardian.update_location("GRD-NOPE", "U1", ON_ROUTE)

    @pytest.mark.asyncio
    async def test_rejects_unknown_status(self, engine, store):
        _make_user(store)
        session = await _start(engine, contacts=[])
        with pytest.raises(ValidationError):
            await engine.guardian.update_location(session.id, "U1", ON_ROUTE, status="lost")


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: End of session
# ═══════════════════════════════════════════════════════════════════════════

class TestEndSession:

    @pytest.mark.asyncio
    async def test_complete(self, engine, store, channels, clock):
        _make_user(store)
        _make_contact(store, "C1")
        session = await _start(engine)
        _clear_calls(channels)
        clock.advance(600)

        done = await engine.guardian.complete(session.id, "U1")

        assert done.status == GuardianStatus.COMPLETED
        assert done.ended_at == clock()
        assert done.actual_arrival == clock()
        message, _ = channels[DeliveryChannel.SMS].calls[0]
        assert "safely arrived" in message.body
        assert await store.get_active_guardian("U1") is None

    @pytest.mark.asyncio
    async def test_cancel(self, engine, store, channels):
        _make_user(store)
        _make_contact(store, "C1")
        session = await _start(engine)
        _clear_calls(channels)

        cancelled = await engine.guardian.cancel(session.id, "U1")

        assert cancelled.status == GuardianStatus.CANCELLED
        assert cancelled.actual_arrival is None
        assert channels[DeliveryChannel.SMS].recipients() == ["C1"]

    @pytest.mark.asyncio
    async def test_terminal_session_not_mutated(self, engine, store):
        _make_user(store)
        session = await _start(engine, contacts=[])
        await engine.guardian.complete(session.id, "U1")
        before = (await store.get_guardian(session.id)).to_dict()

        with pytest.raises(NoActiveSessionError):
            await engine.guardian.update_location(session.id, "U1", OFF_ROUTE)
        with pytest.raises(NoActiveSessionError):
            await engine.guardian.complete(session.id, "U1")
        with pytest.raises(NoActiveSessionError):
            await engine.guardian.cancel(session.id, "U1")

        assert (await store.get_guardian(session.id)).to_dict() == before

    @pytest.mark.asyncio
    async def test_new_session_after_complete(self, engine, store, clock):
        _make_user(store)
        first = await _start(engine, contacts=[])
        await engine.guardian.complete(first.id, "U1")
        clock.advance(60)

        second = await _start(engine, contacts=[])

        assert second.id != first.id
        history = await engine.guardian.history("U1")
        assert [s.id for s in history] == [second.id, first.id]
        assert (await engine.guardian.get_active("U1")).id == second.id
