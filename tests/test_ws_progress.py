"""Tests for the ProgressRelay fan-out and slow-client eviction."""

import asyncio

import pytest

from mathlens.api.ws_progress import ProgressRelay, message_to_payload
from mathlens.domain.enums import EventStage
from mathlens.domain.events import ProgressEvent, RecognitionStarted
from mathlens.events.channel import ProgressChannel


class FakeSocket:
    def __init__(self) -> None:
        self.accepted = False

    async def accept(self) -> None:
        self.accepted = True


@pytest.fixture
def relay(channel: ProgressChannel) -> ProgressRelay:
    relay = ProgressRelay(channel, max_queue=2)
    relay.start()
    yield relay
    relay.stop()


class TestFanOut:
    @pytest.mark.asyncio
    async def test_every_client_gets_each_message(self, relay, channel) -> None:
        a, b = FakeSocket(), FakeSocket()
        queue_a = await relay.connect(a)
        queue_b = await relay.connect(b)

        channel.publish(RecognitionStarted(session_id="s1"))

        assert a.accepted and b.accepted
        expected = {"type": "started", "session_id": "s1"}
        assert queue_a.get_nowait() == expected
        assert queue_b.get_nowait() == expected

    def test_payload_omits_unset_fields(self) -> None:
        payload = message_to_payload(ProgressEvent(stage=EventStage.LATEX, id="s1", latex="x", attempt=1))
        assert payload == {"type": "progress", "stage": "latex", "id": "s1", "latex": "x", "attempt": 1}


class TestSlowClient:
    @pytest.mark.asyncio
    async def test_overflowing_client_is_told_to_close(self, relay, channel) -> None:
        slow, fast = FakeSocket(), FakeSocket()
        slow_queue = await relay.connect(slow)
        fast_queue = await relay.connect(fast)

        for n in range(3):
            channel.publish(RecognitionStarted(session_id=f"s{n}"))
            if n < 2:
                fast_queue.get_nowait()

        assert relay.client_count == 1
        assert slow_queue.qsize() == 1
        assert slow_queue.get_nowait() is None
        assert fast_queue.get_nowait()["session_id"] == "s2"

    @pytest.mark.asyncio
    async def test_evicted_client_receives_nothing_more(self, relay, channel) -> None:
        slow = FakeSocket()
        queue = await relay.connect(slow)
        for n in range(3):
            channel.publish(RecognitionStarted(session_id=f"s{n}"))

        channel.publish(RecognitionStarted(session_id="later"))

        assert queue.get_nowait() is None
        with pytest.raises(asyncio.QueueEmpty):
            queue.get_nowait()
