"""
AirDraw Video Pipeline - Threaded frame source and single-consumer processing.

    camera ──► ThreadedFrameSource ──► FrameQueue ──► MarkerPipeline ──► consumer(FrameResult)
               (capture thread)        (bounded,       (one processing
                mirror / skip           drops oldest)    thread)

The tracking core stays single-threaded: only MarkerPipeline's worker calls
DetectionFusion.process_frame(). Frame skipping and dropping are policies of
the source side, never of the core.
"""

import time
import logging
import platform
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Tuple, Union

import cv2
import numpy as np

from .detection_fusion import DetectionFusion
from .log_utils import RateLimitedLog
from .models import FrameResult


@dataclass
class FrameMetadata:
    """Capture-side statistics."""
    timestamp: float
    frame_number: int
    width: int
    height: int
    fps: float
    dropped_frames: int
    skipped_frames: int = 0


@dataclass
class FramePacket:
    """A captured frame and the time it was taken."""
    frame: np.ndarray
    timestamp: float
    frame_number: int

    @property
    def size(self) -> Tuple[int, int]:
        return self.frame.shape[1], self.frame.shape[0]


class FrameQueue:
    """
    Bounded FIFO of frame packets shared by one producer and one consumer.

    When full, put() evicts the oldest packet so the consumer always works
    on recent frames.
    """

    def __init__(self, maxsize: int = 2):
        self._items: Deque[FramePacket] = deque()
        self._maxsize = max(1, maxsize)
        self._cond = threading.Condition(threading.Lock())
        self._dropped = 0
        self._closed = False

    def put(self, packet: FramePacket) -> bool:
        """Enqueue `packet`; returns False if an older packet was dropped."""
        with self._cond:
            dropped = False
            while len(self._items) >= self._maxsize:
                self._items.popleft()
                self._dropped += 1
                dropped = True
            self._items.append(packet)
            self._cond.notify()
            return not dropped

    def get(self, timeout: Optional[float] = None) -> Optional[FramePacket]:
        """Dequeue the oldest packet, or None on timeout or after close()."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if not self._items:
                return None
            return self._items.popleft()

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class ThreadedFrameSource:
    """
    Captures frames on a daemon thread and pushes them into a FrameQueue.

    Usage:
        queue = FrameQueue()
        source = ThreadedFrameSource(queue, source=0, mirror=True)
        source.start()
    """

    def __init__(
        self,
        queue: FrameQueue,
        source: Union[int, str] = 0,
        resolution: Optional[Tuple[int, int]] = None,
        mirror: bool = True,
        skip_frames: bool = False,
    ):
        """
        Args:
            queue: Destination of captured frames
            source: Camera index or video file path
            resolution: Requested (width, height), None = native
            mirror: Flip frames horizontally (selfie view)
            skip_frames: Forward only every other frame
        """
        self.queue = queue
        self.source = source
        self.resolution = resolution
        self.mirror = mirror
        self.skip_frames = skip_frames

        self._cap: Optional[cv2.VideoCapture] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None

        self._frame_count = 0
        self._skipped = 0
        self._start_time = 0.0
        self._last_frame_time = 0.0
        self._width = 0
        self._height = 0

        self.logger = logging.getLogger("FrameSource")

    def _init_capture(self) -> bool:
        if isinstance(self.source, int):
            system = platform.system()
            if system == "Windows":
                self._cap = cv2.VideoCapture(self.source, cv2.CAP_DSHOW)
            elif system == "Darwin":
                self._cap = cv2.VideoCapture(self.source, cv2.CAP_AVFOUNDATION)
            else:
                self._cap = cv2.VideoCapture(self.source, cv2.CAP_V4L2)
        else:
            self._cap = cv2.VideoCapture(self.source)

        if not self._cap.isOpened():
            self._cap = cv2.VideoCapture(self.source)
            if not self._cap.isOpened():
                self.logger.error(f"Failed to open video source: {self.source}")
                return False

        if self.resolution:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        self._width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.logger.info(f"Video source initialized: {self._width}x{self._height}")
        return True

    def prepare(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Apply the skip and mirror policies; None means the frame is skipped."""
        self._frame_count += 1
        if self.skip_frames and self._frame_count % 2 == 0:
            self._skipped += 1
            return None
        if self.mirror:
            frame = cv2.flip(frame, 1)
        return frame

    def _capture_loop(self):
        while self._running:
            ret, frame = self._cap.read()
            if not ret:
                if isinstance(self.source, str):
                    self.logger.info("End of video file reached")
                    self._running = False
                    self.queue.close()
                else:
                    time.sleep(0.001)
                continue

            capture_time = time.perf_counter()
            frame = self.prepare(frame)
            if frame is None:
                continue
            self._last_frame_time = capture_time
            self.queue.put(FramePacket(frame, capture_time, self._frame_count))

    def start(self) -> bool:
        if self._running:
            return True
        if not self._init_capture():
            return False

        self._running = True
        self._start_time = time.perf_counter()
        self._frame_count = 0
        self._skipped = 0

        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()
        self.logger.info("Capture thread started")
        return True

    def stop(self):
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        if self._cap:
            self._cap.release()
            self._cap = None
        self.logger.info("Capture stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def metadata(self) -> FrameMetadata:
        elapsed = time.perf_counter() - self._start_time if self._start_time else 0.0
        return FrameMetadata(
            timestamp=self._last_frame_time,
            frame_number=self._frame_count,
            width=self._width,
            height=self._height,
            fps=self._frame_count / elapsed if elapsed > 0 else 0.0,
            dropped_frames=self.queue.dropped,
            skipped_frames=self._skipped,
        )

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


class MarkerPipeline:
    """
    Pulls frames from a FrameQueue and feeds them to DetectionFusion.

    The consumer callable receives (FramePacket, FrameResult) on the
    pipeline's worker thread.
    """

    def __init__(
        self,
        fusion: DetectionFusion,
        queue: FrameQueue,
        consumer: Optional[Callable[[FramePacket, FrameResult], None]] = None,
        poll_timeout: float = 0.1,
    ):
        self.fusion = fusion
        self.queue = queue
        self.consumer = consumer
        self.poll_timeout = poll_timeout
        self.processed = 0
        self.errors = 0

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger("MarkerPipeline")
        self._diag = RateLimitedLog(self.logger)

    def process_next(self, timeout: Optional[float] = None) -> Optional[FrameResult]:
        """Process one queued frame synchronously; None if nothing arrived."""
        packet = self.queue.get(timeout=self.poll_timeout if timeout is None else timeout)
        if packet is None:
            return None

        result = self.fusion.process_frame(packet.frame, now=packet.timestamp)
        self.processed += 1
        if self.consumer is not None:
            self.consumer(packet, result)
        return result

    def _run(self):
        try:
            while self._running:
                if self.queue.closed and len(self.queue) == 0:
                    break
                try:
                    self.process_next()
                except Exception as exc:
                    # one bad frame or consumer call must not end the loop
                    self.errors += 1
                    self._diag.warning("frame", f"Frame processing failed: {exc!r}")
        finally:
            self._running = False

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        self.logger.info("Processing thread started")

    def stop(self):
        self._running = False
        self.queue.close()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self.logger.info(f"Processing stopped after {self.processed} frames, {self.errors} errors")

    @property
    def is_running(self) -> bool:
        return self._running
