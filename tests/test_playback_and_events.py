"""
Tests for playback buffers, listener sets and disposer bags.
"""

from unittest.mock import Mock

import pytest

from convai_bridge.audio.playback import BufferDestroyedError, PlaybackBuffer
from convai_bridge.core.events import DisposerBag, ListenerSet


class TestPlaybackBuffer:

    def test_write_then_read(self):
        buffer = PlaybackBuffer("b1")
        buffer.write(b"abcd")
        buffer.write(b"ef")

        assert buffer.buffered_bytes == 6
        assert buffer.read(4) == b"abcd"
        assert buffer.read(10) == b"ef"
        assert buffer.read(10) == b""
        assert buffer.bytes_written == 6

    def test_empty_write_ignored(self):
        buffer = PlaybackBuffer()
        buffer.write(b"")
        assert buffer.bytes_written == 0

    def test_end_keeps_buffered_audio(self):
        buffer = PlaybackBuffer()
        buffer.write(b"abcd")
        buffer.end()

        assert buffer.ended
        assert buffer.read(4) == b"abcd"
        with pytest.raises(BufferDestroyedError):
            buffer.write(b"more")

    def test_destroy_is_idempotent(self):
        buffer = PlaybackBuffer()
        buffer.write(b"abcd")
        buffer.destroy()
        buffer.destroy()

        assert buffer.destroyed
        assert buffer.read(4) == b""
        with pytest.raises(BufferDestroyedError):
            buffer.write(b"abcd")


class TestListenerSet:

    def test_disposer_removes_only_its_listener(self):
        events = ListenerSet()
        first, second = Mock(), Mock()
        dispose_first = events.add("end", first)
        events.add("end", second)

        dispose_first()
        assert events.emit("end") == 1
        first.assert_not_called()
        second.assert_called_once_with()

    def test_dispose_twice_is_harmless(self):
        events = ListenerSet()
        dispose = events.add("end", Mock())
        dispose()
        dispose()
        assert events.count("end") == 0

    def test_same_callback_registered_twice(self):
        events = ListenerSet()
        callback = Mock()
        dispose_a = events.add("x", callback)
        events.add("x", callback)

        dispose_a()
        events.emit("x", 1)
        callback.assert_called_once_with(1)

    def test_once_listener(self):
        events = ListenerSet()
        callback = Mock()
        events.add("error", callback, once=True)

        events.emit("error", "a")
        events.emit("error", "b")
        callback.assert_called_once_with("a")

    def test_failing_listener_does_not_stop_others(self):
        events = ListenerSet()
        after = Mock()
        events.add("end", Mock(side_effect=RuntimeError("boom")))
        events.add("end", after)

        assert events.emit("end") == 2
        after.assert_called_once()


class TestDisposerBag:

    def test_dispose_all(self):
        bag = DisposerBag()
        calls = []
        bag.add(lambda: calls.append("a"))
        bag.add(Mock(side_effect=RuntimeError("boom")))
        bag.add(lambda: calls.append("c"))
        assert len(bag) == 3

        bag.dispose_all()
        assert calls == ["a", "c"]
        assert len(bag) == 0

        bag.dispose_all()
        assert calls == ["a", "c"]
