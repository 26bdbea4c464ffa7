"""
Tests for the streaming frame channel.
"""

import threading

import pytest

from cosmo_engine.core import StreamChannel
from cosmo_engine.models import FrameKind
from cosmo_engine.utils import InvalidTransitionError


def test_frames_arrive_in_order_and_end_once():
    channel = StreamChannel("req-1")
    channel.send_content("Hel")
    channel.send_metadata({"model_id": "cheap"})
    channel.send_content("lo")
    channel.close()
    channel.close()

    frames = channel.collect(timeout=1.0)

    assert [f.kind for f in frames] == [FrameKind.CONTENT, FrameKind.METADATA, FrameKind.CONTENT, FrameKind.END]
    assert [f.sequence for f in frames] == [0, 1, 2, 3]
    assert "".join(f.data for f in frames if f.kind == FrameKind.CONTENT) == "Hello"
    assert channel.get(timeout=0.01) is None


def test_error_frame_precedes_end():
    channel = StreamChannel("req-2")
    channel.send_content("partial")
    channel.send_error("upstream failed")

    frames = channel.collect(timeout=1.0)

    assert [f.kind for f in frames] == [FrameKind.CONTENT, FrameKind.ERROR, FrameKind.END]
    assert frames[1].data == "upstream failed"
    assert channel.closed


def test_sending_after_close_is_rejected():
    channel = StreamChannel("req-3")
    channel.close()

    with pytest.raises(InvalidTransitionError):
        channel.send_content("late")


def test_consumer_on_another_thread():
    channel = StreamChannel("req-4")
    received = []

    def consume():
        for frame in channel:
            received.append(frame.kind)

    consumer = threading.Thread(target=consume)
    consumer.start()
    for word in ("a", "b", "c"):
        channel.send_content(word)
    channel.close()
    consumer.join(1.0)

    assert received == [FrameKind.CONTENT] * 3 + [FrameKind.END]
