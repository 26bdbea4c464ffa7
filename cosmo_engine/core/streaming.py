"""
Streaming channel for incremental request output.
"""

import itertools
import threading
from queue import Queue, Empty
from typing import Any, Iterator, List, Optional

from ..models import Frame
from ..models.enums import FrameKind
from ..utils import get_logger
from ..utils.error_handling import InvalidTransitionError


class StreamChannel:
    """
    Single-producer channel of ordered frames.

    The producer emits content and metadata frames and finishes with exactly
    one end frame; a failure is reported as an error frame followed by the end
    frame. Consumers iterate frames until the end frame arrives.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.logger = get_logger(__name__)
        self._frames: "Queue[Frame]" = Queue()
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send_content(self, text: str) -> None:
        self._put(FrameKind.CONTENT, text)

    def send_metadata(self, data: Any) -> None:
        self._put(FrameKind.METADATA, data)

    def send_error(self, message: str) -> None:
        """Report a failure and end the stream."""
        with self._lock:
            if self._closed:
                return
            self._put_locked(FrameKind.ERROR, message)
            self._put_locked(FrameKind.END, None)
            self._closed = True
        self.logger.debug(f"Stream {self.request_id} ended with error: {message}")

    def close(self) -> None:
        """End the stream; closing twice is a no-op."""
        with self._lock:
            if self._closed:
                return
            self._put_locked(FrameKind.END, None)
            self._closed = True

    def get(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Next frame, or None if none arrives within timeout."""
        try:
            return self._frames.get(timeout=timeout)
        except Empty:
            return None

    def frames(self, timeout: Optional[float] = None) -> Iterator[Frame]:
        """
        Iterate frames up to and including the end frame.

        Stops early if no frame arrives within timeout seconds.
        """
        while True:
            frame = self.get(timeout)
            if frame is None:
                return
            yield frame
            if frame.kind == FrameKind.END:
                return

    def __iter__(self) -> Iterator[Frame]:
        return self.frames()

    def collect(self, timeout: Optional[float] = None) -> List[Frame]:
        return list(self.frames(timeout))

    def _put(self, kind: FrameKind, data: Any) -> None:
        with self._lock:
            if self._closed:
                raise InvalidTransitionError(f"Stream {self.request_id} is closed", current_state="closed")
            self._put_locked(kind, data)

    def _put_locked(self, kind: FrameKind, data: Any) -> None:
        self._frames.put(Frame(kind=kind, sequence=next(self._sequence), data=data))
