"""Tests for badnews/autojoin.py - invitation policy and join retry."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from badnews.autojoin import InvitationReactor, InviteDecision, JoinOutcome, JoinRetry
from badnews.errors import TransportError
from badnews.events import MembershipEvent, RoomState
from tests.fakes import BOT_USER_ID, OTHER_ROOM_ID, ROOM_ID, FakeTransport, transport_error


def invite(room_id: str = ROOM_ID, target: str = BOT_USER_ID, state: RoomState = RoomState.INVITED):
    return MembershipEvent(
        subject_user_id=BOT_USER_ID,
        room_id=room_id,
        room_state=state,
        target_state_key=target,
    )


def make_retry(transport: FakeTransport, **kwargs):
    sleep = AsyncMock()
    return JoinRetry(transport.accept_invitation, sleep=sleep, **kwargs), sleep


# ==================== JoinRetry ====================


class TestJoinRetry:
    @pytest.mark.asyncio
    async def test_immediate_success(self):
        transport = FakeTransport()
        retry, sleep = make_retry(transport)

        state = await retry.run(ROOM_ID)

        assert state.outcome is JoinOutcome.SUCCEEDED
        assert state.attempt_count == 1
        assert transport.accepted == [ROOM_ID]
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [1, 3, 6])
    async def test_n_failures_then_success(self, failures):
        transport = FakeTransport()
        transport.failures["join"] = [transport_error() for _ in range(failures)]
        retry, sleep = make_retry(transport)

        state = await retry.run(ROOM_ID)

        assert state.outcome is JoinOutcome.SUCCEEDED
        assert len(transport.accepted) == failures + 1
        assert [c.args[0] for c in sleep.await_args_list] == [2 * 2**i for i in range(failures)]

    @pytest.mark.asyncio
    async def test_gives_up_once_delay_exceeds_ceiling(self):
        transport = FakeTransport()
        transport.failures["join"] = [transport_error() for _ in range(100)]
        retry, sleep = make_retry(transport)

        state = await retry.run(ROOM_ID)

        assert state.outcome is JoinOutcome.GAVE_UP
        assert state.attempt_count == 12
        assert len(transport.accepted) == 12
        waits = [c.args[0] for c in sleep.await_args_list]
        assert waits == [2, 4, 8, 16, 32, 64, 128, 256, 512, 1024, 2048]
        assert all(w <= 3600 for w in waits)
        assert state.delay > 3600
        assert isinstance(state.last_error, TransportError)

    @pytest.mark.asyncio
    async def test_custom_delays(self):
        transport = FakeTransport()
        transport.failures["join"] = [transport_error() for _ in range(100)]
        retry, sleep = make_retry(transport, base_delay=1, max_delay=4)

        state = await retry.run(ROOM_ID)

        assert state.outcome is JoinOutcome.GAVE_UP
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2, 4]
        assert state.attempt_count == 4

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        accept = AsyncMock(side_effect=RuntimeError("boom"))
        retry = JoinRetry(accept, sleep=AsyncMock())

        with pytest.raises(RuntimeError):
            await retry.run(ROOM_ID)

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        transport = FakeTransport()
        transport.failures["join"] = [transport_error() for _ in range(100)]
        retry = JoinRetry(transport.accept_invitation, base_delay=60)

        task = asyncio.create_task(retry.run(ROOM_ID))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert transport.accepted == [ROOM_ID]


# ==================== InvitationReactor ====================


class TestInvitationReactor:
    @pytest.fixture
    def transport(self):
        return FakeTransport()

    @pytest.fixture
    def reactor(self, transport):
        retry, _ = make_retry(transport)
        return InvitationReactor(transport, ROOM_ID, retry)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("room_id", [ROOM_ID, OTHER_ROOM_ID])
    async def test_ignores_events_about_other_users(self, reactor, transport, room_id):
        decision = await reactor.handle(invite(room_id, target="@someone:example.org"))

        assert decision is InviteDecision.IGNORED
        assert transport.accepted == []
        assert transport.declined == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [RoomState.JOINED, RoomState.LEFT, RoomState.OTHER])
    async def test_ignores_non_invites(self, reactor, transport, state):
        decision = await reactor.handle(invite(OTHER_ROOM_ID, state=state))

        assert decision is InviteDecision.IGNORED
        assert transport.declined == []

    @pytest.mark.asyncio
    async def test_declines_unauthorized_room(self, reactor, transport):
        decision = await reactor.handle(invite(OTHER_ROOM_ID))

        assert decision is InviteDecision.DECLINED
        assert transport.declined == [OTHER_ROOM_ID]
        assert transport.accepted == []
        assert reactor.join_tasks == {}
        assert reactor.declined == 1

    @pytest.mark.asyncio
    async def test_decline_failure_is_not_retried(self, reactor, transport, caplog):
        transport.failures["leave"] = [transport_error("leave", OTHER_ROOM_ID)]

        decision = await reactor.handle(invite(OTHER_ROOM_ID))

        assert decision is InviteDecision.DECLINED
        assert transport.declined == [OTHER_ROOM_ID]
        assert transport.accepted == []
        assert "Failed to decline invitation" in caplog.text

    @pytest.mark.asyncio
    async def test_accepts_authorized_room(self, reactor, transport):
        decision = await reactor.handle(invite(ROOM_ID))
        assert decision is InviteDecision.ACCEPTING

        task = reactor.join_tasks[ROOM_ID]
        state = await task

        assert state.outcome is JoinOutcome.SUCCEEDED
        assert transport.accepted == [ROOM_ID]
        assert transport.declined == []

    @pytest.mark.asyncio
    async def test_join_runs_off_the_event_path(self, transport):
        gate = asyncio.Event()

        async def slow_sleep(delay):
            await gate.wait()

        transport.failures["join"] = [transport_error()]
        reactor = InvitationReactor(transport, ROOM_ID, JoinRetry(transport.accept_invitation, sleep=slow_sleep))

        # handle() returns while the retry is parked in its backoff
        assert await reactor.handle(invite(ROOM_ID)) is InviteDecision.ACCEPTING
        await asyncio.sleep(0)
        assert await reactor.handle(invite(OTHER_ROOM_ID)) is InviteDecision.DECLINED

        gate.set()
        await reactor.join_tasks[ROOM_ID]
        assert transport.accepted == [ROOM_ID, ROOM_ID]

    @pytest.mark.asyncio
    async def test_repeated_invite_does_not_start_second_retry(self, transport):
        gate = asyncio.Event()

        async def slow_sleep(delay):
            await gate.wait()

        transport.failures["join"] = [transport_error()]
        reactor = InvitationReactor(transport, ROOM_ID, JoinRetry(transport.accept_invitation, sleep=slow_sleep))

        await reactor.handle(invite(ROOM_ID))
        task = reactor.join_tasks[ROOM_ID]
        await asyncio.sleep(0)
        await reactor.handle(invite(ROOM_ID))

        assert reactor.join_tasks[ROOM_ID] is task
        gate.set()
        await task
        assert transport.accepted == [ROOM_ID, ROOM_ID]

    @pytest.mark.asyncio
    async def test_on_join_finished_reports_outcome(self, transport):
        finished = []
        transport.failures["join"] = [transport_error() for _ in range(100)]
        retry, _ = make_retry(transport, max_delay=8)
        reactor = InvitationReactor(transport, ROOM_ID, retry, on_join_finished=finished.append)

        await reactor.handle(invite(ROOM_ID))
        await reactor.join_tasks[ROOM_ID]
        await asyncio.sleep(0)

        assert [s.outcome for s in finished] == [JoinOutcome.GAVE_UP]
        assert reactor.join_tasks == {}

    @pytest.mark.asyncio
    async def test_close_cancels_pending_joins(self, transport):
        transport.failures["join"] = [transport_error() for _ in range(100)]
        reactor = InvitationReactor(transport, ROOM_ID, JoinRetry(transport.accept_invitation, base_delay=60))

        await reactor.handle(invite(ROOM_ID))
        task = reactor.join_tasks[ROOM_ID]
        await asyncio.sleep(0)
        await reactor.close()

        assert task.cancelled()
        assert reactor.join_tasks == {}
