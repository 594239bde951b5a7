"""
Tests for the relay orchestrator: lifecycle states, live handling and backfill.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from telethon.errors import RPCError
from telethon.sessions import StringSession

from conftest import OTHER_ID, FakeGateway, RecordingSink, make_message, make_service_message
from TelegramRelay.collection.client import build_client
from TelegramRelay.collection.types import TAG_EDIT, TAG_NEW, EventKind, RawEvent, RelayOptions
from TelegramRelay.orchestrator import RelayOrchestrator, RelayState
from shared.exceptions import AuthenticationError, ResolutionError, SelfLookupError


async def _noop_authenticator(client) -> None:
    return None


def _orchestrator(gw: FakeGateway, sink: RecordingSink, **options) -> RelayOrchestrator:
    opts = RelayOptions(watched_chat_id=42, **options)
    return RelayOrchestrator(options=opts, gateway=gw, sink=sink, authenticator=_noop_authenticator)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_clean_run_ends_stopped(self):
        gw = FakeGateway(live=[RawEvent(tag=TAG_NEW, message=make_message(1, "Hi"))])
        sink = RecordingSink()
        orch = _orchestrator(gw, sink)

        await orch.run()

        assert orch.state is RelayState.STOPPED
        assert orch.watched is not None and orch.watched.chat_id == 42
        assert sink.payloads == [{"text": "Hi", "type": "newMessage", "external_id": "1"}]
        assert gw.disconnect_calls >= 1

    @pytest.mark.asyncio
    async def test_auth_failure_is_fatal(self):
        gw = FakeGateway()
        gw.auth_error = AuthenticationError("auth: bad code")
        orch = _orchestrator(gw, RecordingSink())

        with pytest.raises(AuthenticationError):
            await orch.run()
        assert orch.state is RelayState.FAILED
        assert gw.resolve_calls == 0

    @pytest.mark.asyncio
    async def test_self_lookup_failure_is_fatal(self):
        gw = FakeGateway()
        gw.self_error = SelfLookupError("call self: no user")
        orch = _orchestrator(gw, RecordingSink())

        with pytest.raises(SelfLookupError):
            await orch.run()
        assert orch.state is RelayState.FAILED

    @pytest.mark.asyncio
    async def test_resolution_failure_is_fatal(self):
        gw = FakeGateway(chats=[])
        sink = RecordingSink()
        orch = _orchestrator(gw, sink, backfill_enabled=True)

        with pytest.raises(ResolutionError):
            await orch.run()
        assert orch.state is RelayState.FAILED
        assert gw.fetch_calls == []
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_request_stop_drains_and_stops(self):
        gw = FakeGateway()
        gw.wait_for_stop = True
        orch = _orchestrator(gw, RecordingSink())

        task = asyncio.create_task(orch.run())
        for _ in range(20):
            await asyncio.sleep(0)
            if orch.state is RelayState.RUNNING:
                break
        assert orch.state is RelayState.RUNNING

        orch.request_stop()
        assert orch.state is RelayState.DRAINING
        await asyncio.wait_for(task, timeout=2)
        assert orch.state is RelayState.STOPPED

    @pytest.mark.asyncio
    async def test_health_reflects_state(self):
        gw = FakeGateway(chats=[])
        orch = _orchestrator(gw, RecordingSink())
        ok, info = orch.health()
        assert ok and info["state"] == "bootstrapping"

        with pytest.raises(ResolutionError):
            await orch.run()
        ok, info = orch.health()
        assert not ok and info["state"] == "failed"


class TestLiveEvents:
    @pytest.mark.asyncio
    async def test_other_chat_and_service_messages_are_never_dispatched(self):
        gw = FakeGateway(
            live=[
                RawEvent(tag=TAG_NEW, message=make_message(1, "foreign", chat_id=OTHER_ID)),
                RawEvent(tag=TAG_NEW, message=make_service_message(2)),
                RawEvent(tag=TAG_EDIT, message=make_message(7, "Hello")),
            ]
        )
        sink = RecordingSink()
        orch = _orchestrator(gw, sink)

        await orch.run()

        assert sink.payloads == [{"text": "Hello", "type": "editMessage", "external_id": "7"}]
        assert orch.live_counters.seen == 3
        assert orch.live_counters.skipped == 2

    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_stop_live_stream(self):
        gw = FakeGateway(
            live=[
                RawEvent(tag=TAG_NEW, message=make_message(1, "a")),
                RawEvent(tag=TAG_NEW, message=make_message(2, "b")),
            ]
        )
        sink = RecordingSink(fail_ids={1})
        orch = _orchestrator(gw, sink)

        await orch.run()

        assert [e.message_id for e in sink.events] == [1, 2]
        assert orch.live_counters.failed == 1
        assert orch.live_counters.emitted == 1
        assert orch.state is RelayState.STOPPED

    @pytest.mark.asyncio
    async def test_sink_exception_is_contained(self):
        calls = []

        async def exploding_sink(event):
            calls.append(event.message_id)
            raise RuntimeError("sink bug")

        gw = FakeGateway(
            live=[
                RawEvent(tag=TAG_NEW, message=make_message(1, "a")),
                RawEvent(tag=TAG_NEW, message=make_message(2, "b")),
            ]
        )
        orch = RelayOrchestrator(
            options=RelayOptions(watched_chat_id=42),
            gateway=gw,
            sink=exploding_sink,
            authenticator=_noop_authenticator,
        )

        await orch.run()

        assert calls == [1, 2]
        assert orch.live_counters.failed == 2
        assert orch.state is RelayState.STOPPED


class TestBackfillAlongsideLive:
    @pytest.mark.asyncio
    async def test_backfill_emits_history_as_old_messages(self):
        history = [make_message(i, f"m{i}") for i in range(1, 6)]
        gw = FakeGateway(history=history, live=[RawEvent(tag=TAG_NEW, message=make_message(6, "live"))])
        sink = RecordingSink()
        orch = _orchestrator(gw, sink, backfill_enabled=True, page_size=2)

        await orch.run()

        old = [e.message_id for e in sink.events if e.kind is EventKind.OLD]
        new = [e.message_id for e in sink.events if e.kind is EventKind.NEW]
        assert old == [5, 4, 3, 2, 1]
        assert new == [6]
        assert orch.backfill_counters is not None and orch.backfill_counters.emitted == 5
        assert orch.state is RelayState.STOPPED

    @pytest.mark.asyncio
    async def test_backfill_failure_does_not_stop_live(self):
        gw = FakeGateway(
            history=[make_message(1, "old")],
            live=[RawEvent(tag=TAG_NEW, message=make_message(2, "live"))],
        )
        gw.fetch_error = RPCError(None, "INTERNAL")
        sink = RecordingSink()
        orch = _orchestrator(gw, sink, backfill_enabled=True)

        await orch.run()

        assert [e.message_id for e in sink.events] == [2]
        assert orch.backfill_error is not None
        assert orch.state is RelayState.STOPPED

    @pytest.mark.asyncio
    async def test_backfill_disabled_never_fetches_history(self):
        gw = FakeGateway(history=[make_message(1, "old")])
        orch = _orchestrator(gw, RecordingSink())

        await orch.run()

        assert gw.fetch_calls == []
        assert orch.backfill_counters is None


class TestLiveOrdering:
    @pytest.mark.asyncio
    async def test_slow_delivery_is_not_overtaken(self):
        delivered = []

        async def slow_first_sink(event):
            if event.message_id == 1:
                # Stands in for a retry backoff on the first event.
                await asyncio.sleep(0.05)
            delivered.append(event.message_id)
            return True

        gw = FakeGateway()
        orch = RelayOrchestrator(
            options=RelayOptions(watched_chat_id=42),
            gateway=gw,
            sink=slow_first_sink,
            authenticator=_noop_authenticator,
        )
        orch.watched = await orch._refresh_watched()

        # Telethon dispatches each update as its own task.
        first = asyncio.create_task(orch.handle_live_event(RawEvent(tag=TAG_NEW, message=make_message(1, "a"))))
        second = asyncio.create_task(orch.handle_live_event(RawEvent(tag=TAG_EDIT, message=make_message(1, "a2"))))
        third = asyncio.create_task(orch.handle_live_event(RawEvent(tag=TAG_NEW, message=make_message(2, "b"))))
        await asyncio.gather(first, second, third)

        assert delivered == [1, 1, 2]

    @pytest.mark.asyncio
    async def test_client_dispatches_updates_sequentially(self):
        cfg = SimpleNamespace(telegram_api_id=12345, telegram_api_hash="abcdef", telegram_request_timeout_seconds=30)
        client = build_client(cfg, session=StringSession())

        assert client._sequential_updates is True


class TestDrainAfterLiveEnds:
    @pytest.mark.asyncio
    async def test_backfill_stops_at_page_boundary_when_live_source_ends(self):
        class SlowHistoryGateway(FakeGateway):
            async def fetch_history_page(self, watched, offset_id, limit):
                await asyncio.sleep(0.01)
                return await super().fetch_history_page(watched, offset_id, limit)

        gw = SlowHistoryGateway(history=[make_message(i, f"m{i}") for i in range(1, 1000)])
        sink = RecordingSink()
        orch = _orchestrator(gw, sink, backfill_enabled=True, page_size=10, drain_timeout_seconds=5.0)

        await orch.run()

        assert orch.state is RelayState.STOPPED
        assert orch.backfill_counters is not None
        assert orch.backfill_counters.cancelled
        assert len(gw.fetch_calls) < 100
        # Every fetched page was emitted completely.
        assert len(sink.events) == 10 * len(gw.fetch_calls)
