"""
test_follow_me_session.py — Tests for Follow Me live location sharing.

Covers:
    • Start: viewer filtering, expiry, seeded history
    • History cap (7 updates with a cap of 5)
    • Real-time fan-out to viewers and address privacy
    • Hazard-route warnings
    • Lazy expiry, stop, settings, "shared with me"

Run with:
    pytest tests/test_follow_me_session.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.app.core.errors import (
    NoActiveSessionError,
    SessionAlreadyActiveError,
    SessionExpiredError,
    ValidationError,
)
from backend.app.notifications.models import DeliveryChannel
from backend.app.realtime.publisher import FOLLOW_ME_UPDATE, ROUTE_WARNING, user_group
from backend.app.safety.models import (
    FollowMeSettings,
    FollowMeStatus,
    HazardRoute,
    Location,
    SafetyLevel,
    TrustedContact,
    UserProfile,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

BASE_LAT = 12.9716
BASE_LON = 77.5946


def _loc(step: int = 0, address: str = None) -> Location:
    """A point ``step`` × ~11 m north of the base."""
    return Location(BASE_LAT + step * 0.0001, BASE_LON, address=address)


def _seed(store, contacts=("C1", "C2")) -> None:
    store.add_user(UserProfile(id="U1", name="Asha Rao"))
    for cid in contacts:
        store.add_trusted_contact(TrustedContact(id=cid, owner_id="U1", name=f"Contact {cid}", phone="+15550101"))


def _make_hazard(
    rid: str,
    offset_m: float,
    level: SafetyLevel = SafetyLevel.AVOID,
) -> HazardRoute:
    """Route starting ``offset_m`` metres east of the base point."""
    dlon = offset_m / 108_500.0  # metres per degree of longitude at this latitude
    return HazardRoute(
        id=rid,
        name=f"Route {rid}",
        start=Location(BASE_LAT, BASE_LON + dlon),
        end=Location(BASE_LAT + 0.01, BASE_LON + dlon),
        safety_level=level,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Start
# ═══════════════════════════════════════════════════════════════════════════

class TestStart:

    @pytest.mark.asyncio
    async def test_start_session(self, engine, store, clock, channels):
        _seed(store)

        session = await engine.follow_me.start("U1", _loc(), share_with_contact_ids=["C1", "C2"])

        assert session.status == FollowMeStatus.ACTIVE
        assert session.id.startswith("FLW-")
        assert session.expires_at == clock() + timedelta(seconds=3600)
        assert len(session.location_history) == 1
        assert session.viewer_ids == ["C1", "C2"]
        assert sorted(channels[DeliveryChannel.SMS].recipients()) == ["C1", "C2"]

    @pytest.mark.asyncio
    async def test_viewers_subset_of_trusted_circle(self, engine, store):
        _seed(store, contacts=("C1",))
        store.add_trusted_contact(TrustedContact(id="X1", owner_id="someone-else", name="Stranger"))

        session = await engine.follow_me.start("U1", _loc(), share_with_contact_ids=["C1", "X1", "ghost"])

        assert session.viewer_ids == ["C1"]

    @pytest.mark.asyncio
    async def test_custom_duration(self, engine, store, clock):
        _seed(store)
        session = await engine.follow_me.start("U1", _loc(), duration_seconds=900)
        assert session.expires_at == clock() + timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_one_active_session(self, engine, store):
        _seed(store)
        await engine.follow_me.start("U1", _loc())
        with pytest.raises(SessionAlreadyActiveError):
            await engine.follow_me.start("U1", _loc())

    @pytest.mark.asyncio
    async def test_concurrent_starts(self, engine, store):
        _seed(store)
        results = await asyncio.gather(
            *(engine.follow_me.start("U1", _loc()) for _ in range(4)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert sum(1 for r in results if isinstance(r, SessionAlreadyActiveError)) == 3

    @pytest.mark.asyncio
    async def test_start_replaces_time_expired_session(self, engine, store, clock):
        _seed(store)
        old = await engine.follow_me.start("U1", _loc(), duration_seconds=600)
        clock.advance(601)

        new = await engine.follow_me.start("U1", _loc())

        assert new.id != old.id
        history = {s.id: s.status for s in await engine.follow_me.history("U1")}
        assert history[old.id] == FollowMeStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_rejects_non_positive_duration(self, engine):
        with pytest.raises(ValidationError):
            await engine.follow_me.start("U1", _loc(), duration_seconds=0)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Location updates
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateLocation:

    @pytest.mark.asyncio
    async def test_history_capped_at_newest_points(self, engine, store, clock):
        _seed(store)
        await engine.follow_me.start("U1", _loc(0), settings=FollowMeSettings(max_history_points=5))

        for step in range(1, 8):
            clock.advance(30)
            await engine.follow_me.update_location("U1", _loc(step))

        session = await store.get_active_follow_me("U1")
        assert len(session.location_history) == 5
        assert [round((p.latitude - BASE_LAT) / 0.0001) for p in session.location_history] == [3, 4, 5, 6, 7]
        assert session.current_location.latitude == _loc(7).latitude

    @pytest.mark.asyncio
    async def test_publishes_to_each_viewer(self, engine, store, publisher):
        _seed(store)
        session = await engine.follow_me.start("U1", _loc(), share_with_contact_ids=["C1", "C2"])

        await engine.follow_me.update_location("U1", _loc(1, address="Science Block"))

        for viewer in ("C1", "C2"):
            events = publisher.events_for(user_group(viewer), FOLLOW_ME_UPDATE)
            assert len(events) == 1
            assert events[0].payload["session_id"] == session.id
            assert events[0].payload["location"]["address"] == "Science Block"

    @pytest.mark.asyncio
    async def test_address_hidden_when_not_shared(self, engine, store, publisher):
        _seed(store)
        await engine.follow_me.start(
            "U1", _loc(), share_with_contact_ids=["C1"],
            settings=FollowMeSettings(share_address=False),
        )

        update = await engine.follow_me.update_location("U1", _loc(1, address="Science Block"))

        payload = publisher.events_for(user_group("C1"), FOLLOW_ME_UPDATE)[0].payload
        assert payload["location"]["address"] is None
        assert update.location.address == "Science Block"

    @pytest.mark.asyncio
    async def test_hazard_warning(self, engine, store, publisher):
        _seed(store)
        store.add_hazard_route(_make_hazard("R-near", 100))
        store.add_hazard_route(_make_hazard("R-moderate", 150, SafetyLevel.MODERATE))
        store.add_hazard_route(_make_hazard("R-safe", 50, SafetyLevel.SAFE))
        store.add_hazard_route(_make_hazard("R-far", 800))
        await engine.follow_me.start("U1", _loc())

        update = await engine.follow_me.update_location("U1", _loc())

        assert [w.id for w in update.warnings] == ["R-near", "R-moderate"]
        events = publisher.events_for(user_group("U1"), ROUTE_WARNING)
        assert len(events) == 1
        assert events[0].payload["message"] == "⚠️ Near 2 potentially unsafe route(s)"
        assert [r["id"] for r in events[0].payload["routes"]] == ["R-near", "R-moderate"]
        assert update.to_dict()["hazard_count"] == 2

    @pytest.mark.asyncio
    async def test_inactive_hazard_ignored(self, engine, store, publisher):
        _seed(store)
        route = _make_hazard("R-closed", 20)
        route.is_active = False
        store.add_hazard_route(route)
        await engine.follow_me.start("U1", _loc())

        update = await engine.follow_me.update_location("U1", _loc())

        assert update.warnings == []
        assert publisher.events_for(user_group("U1"), ROUTE_WARNING) == []

    @pytest.mark.asyncio
    async def test_no_session(self, engine):
        with pytest.raises(NoActiveSessionError):
            await engine.follow_me.update_location("U1", _loc())

    @pytest.mark.asyncio
    async def test_lazy_expiry(self, engine, store, clock, publisher):
        _seed(store)
        session = await engine.follow_me.start("U1", _loc(), share_with_contact_ids=["C1"], duration_seconds=600)
        clock.advance(601)

        with pytest.raises(SessionExpiredError) as exc:
            await engine.follow_me.update_location("U1", _loc(1))
        assert exc.value.status_code == 410

        history = await engine.follow_me.history("U1")
        assert history[0].id == session.id
        assert history[0].status == FollowMeStatus.EXPIRED
        assert len(history[0].location_history) == 1
        assert publisher.events_for(user_group("C1"), FOLLOW_ME_UPDATE) == []

        with pytest.raises(NoActiveSessionError):
            await engine.follow_me.update_location("U1", _loc(2))

    @pytest.mark.asyncio
    async def test_update_exactly_at_expiry_accepted(self, engine, store, clock):
        _seed(store)
        await engine.follow_me.start("U1", _loc(), duration_seconds=600)
        clock.advance(600)

        update = await engine.follow_me.update_location("U1", _loc(1))
        assert update.session.status == FollowMeStatus.ACTIVE


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Stop, settings, queries
# ═══════════════════════════════════════════════════════════════════════════

class TestStopAndSettings:

    @pytest.mark.asyncio
    async def test_stop(self, engine, store, channels, clock):
        _seed(store)
        await engine.follow_me.start("U1", _loc(), share_with_contact_ids=["C1"])
        channels[DeliveryChannel.SMS].calls.clear()
        clock.advance(120)

        stopped = await engine.follow_me.stop("U1")

        assert stopped.status == FollowMeStatus.STOPPED
        assert stopped.ended_at == clock()
        message, _ = channels[DeliveryChannel.SMS].calls[0]
        assert "stopped sharing" in message.body
        assert await engine.follow_me.get_active("U1") is None

    @pytest.mark.asyncio
    async def test_stop_after_expiry_records_expired(self, engine, store, channels, clock):
        _seed(store)
        session = await engine.follow_me.start("U1", _loc(), duration_seconds=60, share_with_contact_ids=["C1"])
        channels[DeliveryChannel.SMS].calls.clear()
        clock.advance(61)

        with pytest.raises(SessionExpiredError):
            await engine.follow_me.stop("U1")

        [stored] = await store.list_follow_me("U1")
        assert stored.id == session.id
        assert stored.status == FollowMeStatus.EXPIRED
        assert stored.ended_at == clock()
        assert channels[DeliveryChannel.SMS].calls == []

    @pytest.mark.asyncio
    async def test_stop_without_session(self, engine):
        with pytest.raises(NoActiveSessionError):
            await engine.follow_me.stop("U1")

    @pytest.mark.asyncio
    async def test_update_settings_trims_history(self, engine, store, clock):
        _seed(store)
        await engine.follow_me.start("U1", _loc(0))
        for step in range(1, 6):
            clock.advance(30)
            await engine.follow_me.update_location("U1", _loc(step))

        settings = await engine.follow_me.update_settings("U1", max_history_points=2, share_address=False)

        assert settings.max_history_points == 2
        assert settings.share_address is False
        session = await store.get_active_follow_me("U1")
        assert len(session.location_history) == 2
        assert session.location_history[-1].latitude == _loc(5).latitude

    @pytest.mark.asyncio
    async def test_update_settings_validates(self, engine, store):
        _seed(store)
        await engine.follow_me.start("U1", _loc())
        with pytest.raises(ValidationError):
            await engine.follow_me.update_settings("U1", max_history_points=0)

    @pytest.mark.asyncio
    async def test_shared_with(self, engine, store, clock):
        _seed(store)
        store.add_user(UserProfile(id="U2", name="Ben"))
        store.add_trusted_contact(TrustedContact(id="C9", owner_id="U2", name="Shared"))
        await engine.follow_me.start("U1", _loc(), share_with_contact_ids=["C1"])
        await engine.follow_me.start("U2", _loc(), share_with_contact_ids=["C9"], duration_seconds=300)

        assert [s.user_id for s in await engine.follow_me.shared_with("C1")] == ["U1"]
        assert [s.user_id for s in await engine.follow_me.shared_with("C9")] == ["U2"]

        clock.advance(301)
        assert await engine.follow_me.shared_with("C9") == []
        assert await engine.follow_me.shared_with("nobody") == []
