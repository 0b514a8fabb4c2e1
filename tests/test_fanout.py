"""Tests for the realtime fanout engine and sharing reconciliation."""

from datetime import UTC, datetime

import pytest
from conftest import make_timer

from bubble_timer.errors import NotFoundError
from bubble_timer.models import Connection, NotificationPreferences, TimerPayload, TimerReference


def payload(timer_id: str = "t1", user_id: str | None = None, **overrides) -> TimerPayload:
    fields = {"id": timer_id, "name": "Pasta", "total_duration": "PT10M", "user_id": user_id}
    fields.update(overrides)
    return TimerPayload(**fields)


async def share(services, timer_id: str, *users: str):
    for user in users:
        await services.sharing.add_relationship(timer_id, user)


# ============================================================
# DELIVERY
# ============================================================


class TestFanout:
    async def test_reaches_every_live_device(self, services, connect):
        phone = await connect("alice", "phone")
        tablet = await connect("alice", "tablet")
        bob = await connect("bob", "phone")

        deliveries = await services.engine.fanout({"alice", "bob"}, {"type": "hello"})

        assert len(deliveries) == 3
        assert all(d.success for d in deliveries)
        for ws in (phone, tablet, bob):
            assert ws.sent == [{"type": "hello"}]

    async def test_excludes_only_the_acting_users_device(self, services, connect):
        alice_phone = await connect("alice", "phone")
        alice_tablet = await connect("alice", "tablet")
        bob_phone = await connect("bob", "phone")

        await services.engine.fanout(
            {"alice", "bob"}, {"type": "hello"}, acting_user_id="alice", exclude_device_id="phone"
        )

        assert alice_phone.sent == []
        assert alice_tablet.sent == [{"type": "hello"}]
        assert bob_phone.sent == [{"type": "hello"}]

    async def test_user_without_live_connection_is_skipped(self, services):
        await services.connections.update_connection(Connection(user_id="alice", device_id="phone"))
        assert await services.engine.fanout({"alice", "nobody"}, {"type": "hello"}) == []

    async def test_stale_connection_removed(self, services, connect):
        await connect("bob", "phone", broken=True)
        healthy = await connect("bob", "tablet")

        deliveries = await services.engine.broadcast_to_user("bob", {"type": "hello"})

        by_device = {d.device_id: d for d in deliveries}
        assert by_device["phone"].success is False
        assert by_device["phone"].status == "stale connection removed"
        assert by_device["tablet"].success is True
        assert healthy.sent == [{"type": "hello"}]
        stale = await services.connections.get_connection("bob", "phone")
        assert stale.connection_id is None

    async def test_connection_without_local_socket_is_kept(self, services):
        await services.connections.update_connection(
            Connection(user_id="bob", device_id="phone", connection_id="other-process")
        )
        [result] = await services.engine.broadcast_to_user("bob", {"type": "hello"})
        assert result.success is False
        assert result.status == "no local socket"
        live = await services.connections.get_live_connections("bob")
        assert [c.connection_id for c in live] == ["other-process"]

    async def test_directory_failure_for_one_user_does_not_abort(self, services, connect, tables):
        await connect("alice", "phone")
        tables.user_connections.fail_on.add("query")
        assert await services.engine.fanout({"alice", "bob"}, {"type": "hello"}) == []


# ============================================================
# UPDATE
# ============================================================


class TestUpdateTimer:
    async def test_creates_timer_owned_by_actor(self, services):
        report = await services.engine.update_timer(payload(), "alice")
        assert report.persisted is True
        stored = await services.timers.get_timer("t1")
        assert stored.user_id == "alice"
        assert report.recipients == {"alice"}

    async def test_reconciles_share_list(self, services):
        await services.timers.save_timer(make_timer())
        await share(services, "t1", "bob", "carol")

        report = await services.engine.update_timer(
            payload(), "alice", share_with=["carol", "dave"]
        )

        assert report.added == ["dave"]
        assert report.removed == ["bob"]
        assert sorted(await services.sharing.get_shared_users("t1")) == ["carol", "dave"]
        assert report.recipients == {"alice", "bob", "carol", "dave"}

    async def test_omitted_share_list_clears_sharing(self, services):
        await services.timers.save_timer(make_timer())
        await share(services, "t1", "bob", "carol")

        report = await services.engine.update_timer(payload(), "alice")

        assert sorted(report.removed) == ["bob", "carol"]
        assert await services.sharing.get_shared_users("t1") == []
        assert report.recipients == {"alice", "bob", "carol"}

    async def test_duplicate_share_targets_added_once(self, services):
        report = await services.engine.update_timer(
            payload(), "alice", share_with=["bob", "bob", ""]
        )
        assert report.added == ["bob"]
        assert await services.sharing.get_shared_users("t1") == ["bob"]

    async def test_non_owner_update_reaches_owner(self, services, connect):
        await services.timers.save_timer(make_timer(user_id="alice"))
        await share(services, "t1", "bob", "carol")
        alice = await connect("alice", "phone")
        bob = await connect("bob", "phone")
        carol_phone = await connect("carol", "phone")
        carol_tablet = await connect("carol", "tablet")

        report = await services.engine.update_timer(
            payload(user_id="alice", name="Pasta (al dente)"),
            "carol",
            share_with=["bob", "carol"],
            exclude_device_id="phone",
        )

        assert report.recipients == {"alice", "bob", "carol"}
        assert (await services.timers.get_timer("t1")).user_id == "alice"
        assert carol_phone.sent == []
        for ws in (alice, bob, carol_tablet):
            [frame] = ws.sent
            assert frame["type"] == "updateTimer"
            assert frame["timer"]["name"] == "Pasta (al dente)"
            assert frame["shareWith"] == ["bob", "carol"]

    async def test_every_involved_user_notified_once(self, services, connect):
        await services.timers.save_timer(make_timer(user_id="owner"))
        await share(services, "t1", "actor", "a", "b")
        sockets = {user: await connect(user, "phone") for user in ("owner", "actor", "a", "b")}

        report = await services.engine.update_timer(
            payload(), "actor", share_with=["actor", "a", "b"]
        )

        assert report.recipients == {"owner", "actor", "a", "b"}
        for ws in sockets.values():
            assert len(ws.sent) == 1

    async def test_relayed_frame_used_verbatim(self, services, connect):
        bob = await connect("bob", "phone")
        frame = {"type": "updateTimer", "messageId": "m1", "timer": {"id": "t1"}}
        await services.engine.update_timer(payload(), "alice", share_with=["bob"], frame=frame)
        assert bob.sent == [frame]

    async def test_save_failure_still_fans_out(self, services, connect, tables):
        bob = await connect("bob", "phone")
        tables.timers.fail_on.add("put")

        report = await services.engine.update_timer(payload(), "alice", share_with=["bob"])

        assert report.persisted is False
        assert len(bob.sent) == 1

    async def test_failed_edge_reported(self, services, tables):
        tables.shared_timers.fail_on.add("put")
        report = await services.engine.update_timer(payload(), "alice", share_with=["bob"])
        assert report.failed_adds == ["bob"]
        assert report.added == []


# ============================================================
# STOP
# ============================================================


class TestStopTimer:
    async def test_deletes_timer_and_relationships(self, services, connect):
        await services.timers.save_timer(make_timer(user_id="alice"))
        await share(services, "t1", "bob", "carol")
        alice = await connect("alice", "phone")
        carol = await connect("carol", "phone")

        report = await services.engine.stop_timer("t1", "bob")

        assert await services.timers.get_timer("t1") is None
        assert await services.sharing.get_shared_users("t1") == []
        assert sorted(report.removed) == ["bob", "carol"]
        assert report.recipients == {"alice", "bob", "carol"}
        assert alice.sent == [{"type": "stopTimer", "timerId": "t1"}]
        assert carol.sent == [{"type": "stopTimer", "timerId": "t1"}]

    async def test_owner_from_inline_timer_data(self, services):
        report = await services.engine.stop_timer(
            "t1", "bob", timer_data=TimerReference(id="t1", user_id="alice")
        )
        assert report.recipients == {"alice", "bob"}

    async def test_unknown_owner_left_out(self, services):
        report = await services.engine.stop_timer("t1", "bob")
        assert report.recipients == {"bob"}

    async def test_stop_twice_is_harmless(self, services):
        await services.timers.save_timer(make_timer())
        await services.engine.stop_timer("t1", "alice")
        report = await services.engine.stop_timer("t1", "alice")
        assert report.persisted is True
        assert report.removed == []

    async def test_failed_removal_does_not_abort(self, services, connect, tables):
        await services.timers.save_timer(make_timer())
        await share(services, "t1", "bob")
        bob = await connect("bob", "phone")
        tables.shared_timers.fail_on.add("delete")

        report = await services.engine.stop_timer("t1", "alice")

        assert report.failed_removes == ["bob"]
        assert bob.sent == [{"type": "stopTimer", "timerId": "t1"}]


# ============================================================
# SHARE
# ============================================================


class TestShareTimer:
    async def test_shares_and_invites(self, services, gateway):
        await services.timers.save_timer(make_timer(user_id="alice"))
        await services.notifications.register_device_token("bob", "phone", "fcm-bob")

        result = await services.engine.share_timer_with_users("t1", "alice", ["bob", "carol"])

        assert result.success == ["bob", "carol"]
        assert result.failed == []
        assert sorted(await services.sharing.get_shared_users("t1")) == ["bob", "carol"]
        assert [m["token"] for m in gateway.sent] == ["fcm-bob"]
        assert gateway.sent[0]["body"] == 'alice invited you to join timer "Pasta"'

    async def test_missing_timer_raises(self, services):
        with pytest.raises(NotFoundError):
            await services.engine.share_timer_with_users("t1", "alice", ["bob"])

    async def test_fallback_timer_saved(self, services):
        result = await services.engine.share_timer_with_users(
            "t1", "alice", ["bob"], timer_fallback=payload("ignored", name="Tea")
        )
        assert result.success == ["bob"]
        stored = await services.timers.get_timer("t1")
        assert (stored.name, stored.user_id) == ("Tea", "alice")

    async def test_edge_failure_reported_per_target(self, services, tables):
        await services.timers.save_timer(make_timer())
        tables.shared_timers.fail_on.add("put")
        result = await services.engine.share_timer_with_users("t1", "alice", ["bob"])
        assert result.failed == ["bob"]

    async def test_token_lookup_failure_marks_target_failed(self, services, tables):
        await services.timers.save_timer(make_timer())
        tables.device_tokens.fail_on.add("query")
        result = await services.engine.share_timer_with_users("t1", "alice", ["bob", "carol"])
        assert result.success == []
        assert result.failed == ["bob", "carol"]

    async def test_quiet_hours_still_share(self, services, gateway, clock):
        await services.timers.save_timer(make_timer())
        await services.notifications.register_device_token("bob", "phone", "fcm-bob")
        await services.notifications.update_preferences(
            "bob", NotificationPreferences(quiet_hours_start="22:00", quiet_hours_end="08:00")
        )
        clock.now = datetime(2024, 5, 1, 23, 30, tzinfo=UTC)

        result = await services.engine.share_timer_with_users("t1", "alice", ["bob"])

        assert result.success == ["bob"]
        assert gateway.sent == []
