"""
Tests for ConnectionSupervisor.

Covers:
- Per-speaker stream creation, forwarding and teardown
- Rejoin backoff and the rejoin ceiling
- Forced-move (close code 4014) recovery window
- Session cleanup on destroy and leave
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from convai_bridge.config.models import ReconnectPolicy
from convai_bridge.core.connection_supervisor import ConnectionSupervisor
from convai_bridge.transport.base import ConnectionStatus

# 20 ms of 48 kHz stereo PCM16
FRAME = b"\x10\x00\x20\x00" * 960


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def agent():
    agent = Mock()
    agent.submit_audio = AsyncMock()
    agent.disconnect = AsyncMock()
    return agent


@pytest.fixture
def supervisor(agent, decoder_factory):
    return ConnectionSupervisor(agent, ReconnectPolicy(), decoder_factory=decoder_factory)


class TestSpeakerStreams:

    @pytest.mark.asyncio
    async def test_frames_forwarded_as_session_audio(self, supervisor, transport, agent):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        stream = transport.streams["alice"][0]

        stream.push(FRAME)
        stream.push(FRAME)
        await settle()

        assert agent.submit_audio.await_count == 2
        pcm = agent.submit_audio.await_args.args[0]
        # 48 kHz stereo -> 16 kHz mono is a sixth of the bytes
        assert abs(len(pcm) - len(FRAME) // 6) <= 4
        assert len(pcm) % 2 == 0

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_duplicate_speaking_start_is_noop(self, supervisor, transport, agent):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        transport.start_speaking("alice")

        assert transport.subscribe_calls == ["alice"]
        assert list(supervisor.session.streams) == ["alice"]

        transport.streams["alice"][0].push(FRAME)
        await settle()
        assert agent.submit_audio.await_count == 1

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_concurrent_speakers_tracked_independently(self, supervisor, transport, agent):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        transport.start_speaking("bob")

        transport.streams["alice"][0].push(FRAME)
        transport.streams["bob"][0].push(FRAME)
        await settle()

        assert set(supervisor.session.streams) == {"alice", "bob"}
        assert agent.submit_audio.await_count == 2

        await supervisor.leave()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", ["end", "close", "error"])
    async def test_stream_teardown_on_every_ending(self, supervisor, transport, event):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        stream = transport.streams["alice"][0]
        consumer = supervisor.session.streams["alice"].task

        args = (RuntimeError("receive failed"),) if event == "error" else ()
        stream.emit(event, *args)
        await settle()

        assert "alice" not in supervisor.session.streams
        assert stream.destroy_calls == 1
        assert stream.remove_all_calls == 1
        assert consumer.done()

        # A later speaking event starts a fresh stream
        transport.start_speaking("alice")
        assert len(transport.streams["alice"]) == 2

        await supervisor.leave()
        assert stream.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_natural_end_of_feed_removes_stream(self, supervisor, transport):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        stream = transport.streams["alice"][0]

        stream.push(None)
        await settle()

        assert "alice" not in supervisor.session.streams
        assert stream.destroy_calls == 1

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_subscribe_failure_registers_nothing(self, supervisor, transport):
        supervisor.attach(transport)
        transport.fail_subscribe = True
        transport.start_speaking("alice")

        assert supervisor.session.streams == {}

        transport.fail_subscribe = False
        transport.start_speaking("alice")
        assert "alice" in supervisor.session.streams

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_undecodable_frame_only_drops_that_frame(self, supervisor, transport, agent):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        stream = transport.streams["alice"][0]

        stream.push(b"bad")
        stream.push(FRAME)
        await settle()

        tracked = supervisor.session.streams["alice"]
        assert tracked.frames_dropped == 1
        assert tracked.frames_forwarded == 1
        assert agent.submit_audio.await_count == 1

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_forward_error_keeps_stream(self, supervisor, transport, agent):
        agent.submit_audio.side_effect = [RuntimeError("socket gone"), None]
        supervisor.attach(transport)
        transport.start_speaking("alice")
        stream = transport.streams["alice"][0]

        stream.push(FRAME)
        stream.push(FRAME)
        await settle()

        assert "alice" in supervisor.session.streams
        assert agent.submit_audio.await_count == 2
        assert supervisor.session.streams["alice"].frames_forwarded == 1

        await supervisor.leave()


class TestReconnectPolicy:

    def test_linear_backoff(self):
        policy = ReconnectPolicy()
        assert [policy.backoff_delay(n) for n in range(1, 6)] == [5, 10, 15, 20, 25]

    @pytest.mark.asyncio
    async def test_rejoin_ceiling_destroys_connection(self, supervisor, transport, agent):
        supervisor.attach(transport)

        with patch("convai_bridge.core.connection_supervisor.asyncio.sleep", new=AsyncMock()) as sleep:
            for _ in range(5):
                transport.disconnect()
                await supervisor.recovery_task
                transport.set_state(ConnectionStatus.SIGNALLING)

            assert transport.rejoin_calls == 5
            assert transport.destroy_calls == 0
            assert [c.args[0] for c in sleep.await_args_list] == [5, 10, 15, 20, 25]

            transport.disconnect()
            await supervisor.recovery_task

        assert transport.destroy_calls == 1
        assert transport.state.status is ConnectionStatus.DESTROYED

        await supervisor.wait_closed()
        assert transport.rejoin_calls == 5
        agent.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ready_resets_attempts(self, supervisor, transport):
        supervisor.attach(transport)

        with patch("convai_bridge.core.connection_supervisor.asyncio.sleep", new=AsyncMock()) as sleep:
            transport.disconnect()
            await supervisor.recovery_task
            transport.set_state(ConnectionStatus.READY)

            assert supervisor.session.rejoin_attempts == 0

            transport.disconnect()
            await supervisor.recovery_task

        assert sleep.await_args_list[-1].args[0] == 5
        assert transport.rejoin_calls == 2

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_rejoin_skipped_when_recovered_during_backoff(self, supervisor, transport):
        supervisor.attach(transport)

        async def recover_while_waiting(delay):
            transport.set_state(ConnectionStatus.READY)

        with patch("convai_bridge.core.connection_supervisor.asyncio.sleep", new=recover_while_waiting):
            transport.disconnect()
            await supervisor.recovery_task

        assert transport.rejoin_calls == 0
        assert transport.destroy_calls == 0

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_forced_move_recovers(self, agent, transport, decoder_factory):
        supervisor = ConnectionSupervisor(agent, ReconnectPolicy(), decoder_factory=decoder_factory)
        supervisor.attach(transport)

        transport.disconnect(close_code=4014)
        await settle()
        transport.set_state(ConnectionStatus.CONNECTING)
        await supervisor.recovery_task

        assert transport.destroy_calls == 0
        assert transport.rejoin_calls == 0
        assert supervisor.session.rejoin_attempts == 0

        await supervisor.leave()

    @pytest.mark.asyncio
    async def test_forced_move_timeout_destroys(self, agent, transport, decoder_factory):
        policy = ReconnectPolicy(forced_move_recovery_timeout_sec=0.01)
        supervisor = ConnectionSupervisor(agent, policy, decoder_factory=decoder_factory)
        supervisor.attach(transport)

        transport.disconnect(close_code=4014)
        await supervisor.recovery_task

        assert transport.destroy_calls == 1
        assert transport.rejoin_calls == 0
        await supervisor.wait_closed()
        agent.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_close_codes_use_rejoin(self, supervisor, transport):
        supervisor.attach(transport)

        with patch("convai_bridge.core.connection_supervisor.asyncio.sleep", new=AsyncMock()):
            transport.disconnect(close_code=4006)
            await supervisor.recovery_task

        assert transport.rejoin_calls == 1

        await supervisor.leave()


class TestCleanup:

    @pytest.mark.asyncio
    async def test_destroy_releases_everything(self, supervisor, transport, agent):
        supervisor.attach(transport)
        transport.start_speaking("alice")
        transport.start_speaking("bob")
        alice, bob = transport.streams["alice"][0], transport.streams["bob"][0]
        alice.destroy = Mock(side_effect=RuntimeError("already gone"))

        transport.destroy()
        await supervisor.wait_closed()

        assert supervisor.session.streams == {}
        assert bob.destroy_calls == 1
        assert alice.remove_all_calls == 1
        assert transport.events.count("state") == 0
        assert transport.events.count("speaking") == 0
        agent.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, supervisor, transport, agent):
        supervisor.attach(transport)
        transport.start_speaking("alice")

        await supervisor.leave()
        await supervisor.leave()

        assert transport.destroy_calls == 1
        assert supervisor.closed
        agent.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_leave_before_attach(self, supervisor, agent):
        await supervisor.leave()
        agent.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_agent_disconnect_failure_still_closes(self, supervisor, transport, agent):
        agent.disconnect.side_effect = RuntimeError("boom")
        supervisor.attach(transport)

        await supervisor.leave()
        assert supervisor.closed

    @pytest.mark.asyncio
    async def test_attach_twice_rejected(self, supervisor, transport):
        supervisor.attach(transport)
        with pytest.raises(RuntimeError):
            supervisor.attach(transport)
        await supervisor.leave()
