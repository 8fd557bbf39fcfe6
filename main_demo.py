#!/usr/bin/env python3
"""
AirDraw Engine - Marker Drawing Demo

Demonstrates the marker-tracking pipeline:
1. Opens webcam feed (mirrored)
2. User clicks on a colored marker to calibrate color and shape
3. The marker position is tracked and smoothed every frame
4. While drawing is on, the tracked position leaves a stroke
5. Losing the marker lifts the pen; reacquiring it resumes tracking

Usage:
    python main_demo.py

Controls:
    - LEFT CLICK: Calibrate on the marker under the cursor
    - D: Toggle drawing
    - M: Cycle detection mode (combined / color / shape)
    - C: Clear strokes
    - R: Reset position history
    - Q/ESC: Quit
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from airdraw.config import DetectionMode, TrackerSettings
from airdraw.detection_fusion import DetectionFusion
from airdraw.log_utils import configure_logging
from airdraw.models import FrameResult, FrameStatus
from airdraw.video_pipeline import FramePacket, FrameQueue, MarkerPipeline, ThreadedFrameSource

MODE_CYCLE = [DetectionMode.COMBINED, DetectionMode.COLOR, DetectionMode.SHAPE]

STATUS_COLORS = {
    FrameStatus.FOUND: (0, 220, 0),
    FrameStatus.LOST: (0, 0, 255),
    FrameStatus.NONE: (0, 200, 255),
    FrameStatus.UNCALIBRATED: (200, 200, 200),
}


class AirDrawDemo:
    """
    Interactive demo of the AirDraw tracking engine.
    """

    WINDOW_NAME = "AirDraw Demo"

    def __init__(
            self,
            source=0,
            settings: Optional[TrackerSettings] = None,
            resolution: Optional[Tuple[int, int]] = None,
            mirror: bool = True,
            skip_frames: bool = False,
    ):
        self.settings = settings or TrackerSettings.from_env()
        self.fusion = DetectionFusion(self.settings)
        self.queue = FrameQueue(maxsize=2)
        self.source = ThreadedFrameSource(
            self.queue, source=source, resolution=resolution, mirror=mirror, skip_frames=skip_frames
        )
        self.pipeline = MarkerPipeline(self.fusion, self.queue, consumer=self._on_frame)

        self.pending_click: Optional[Tuple[int, int]] = None
        self.strokes: List[List[Tuple[int, int]]] = []
        self.drawing = False
        self.last_result: Optional[FrameResult] = None
        self.last_packet: Optional[FramePacket] = None
        self.logger = logging.getLogger("AirDrawDemo")

    def _mouse_callback(self, event, x, y, flags, param):
        if event == cv2.EVENT_LBUTTONDOWN:
            self.pending_click = (x, y)

    def _calibrate(self, frame: np.ndarray):
        point = self.pending_click
        self.pending_click = None
        try:
            profile = self.fusion.calibrate(frame, point)
        except ValueError as exc:
            # CalibrationError or OutOfBoundsError
            self.logger.warning(f"Calibration failed: {exc}")
            return
        self.strokes.clear()
        shape = profile.reference_shape.shape_type.display_name if profile.has_shape else "none"
        self.logger.info(f"Tracking RGB={profile.target_color}, shape={shape}")

    def _handle_key(self, key: int) -> bool:
        """Returns False when the demo should quit."""
        if key in (ord("q"), 27):
            return False
        if key == ord("d"):
            self.drawing = not self.drawing
            self.fusion.set_drawing_status(self.drawing)
            if self.drawing:
                self.strokes.append([])
            self.logger.info(f"Drawing {'on' if self.drawing else 'off'}")
        elif key == ord("m"):
            index = MODE_CYCLE.index(self.fusion.detection_mode)
            self.fusion.set_detection_mode(MODE_CYCLE[(index + 1) % len(MODE_CYCLE)])
        elif key == ord("c"):
            self.strokes.clear()
            if self.drawing:
                self.strokes.append([])
        elif key == ord("r"):
            self.fusion.reset_position_history()
        return True

    def _on_frame(self, packet: FramePacket, result: FrameResult):
        self.last_packet = packet
        self.last_result = result
        if self.pending_click is not None:
            self._calibrate(packet.frame)
        if not self.drawing:
            return
        if result.is_found:
            if not self.strokes:
                self.strokes.append([])
            self.strokes[-1].append(result.position.as_int())
        elif result.is_lost and self.strokes and self.strokes[-1]:
            # pen up
            self.strokes.append([])

    def _render(self, frame: np.ndarray) -> np.ndarray:
        out = frame.copy()
        for stroke in self.strokes:
            if len(stroke) > 1:
                cv2.polylines(out, [np.array(stroke, dtype=np.int32)], False, (255, 0, 255), 3, cv2.LINE_AA)

        result = self.last_result
        if result is not None:
            trail = [p.as_int() for p in result.trail]
            if len(trail) > 1:
                cv2.polylines(out, [np.array(trail, dtype=np.int32)], False, (255, 255, 0), 1, cv2.LINE_AA)
            if result.is_found:
                cv2.circle(out, result.position.as_int(), 8, (0, 255, 0), 2, cv2.LINE_AA)

            thresholds = self.fusion.threshold_state
            text = (
                f"{result.status.value.upper()} | {self.fusion.detection_mode.value} | "
                f"src={result.source.value} | tier={thresholds.tier.name} | "
                f"draw={'on' if self.drawing else 'off'}"
            )
            cv2.putText(out, text, (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.55,
                        STATUS_COLORS[result.status], 1, cv2.LINE_AA)
        return out

    def run(self):
        """Run the demo."""
        self.logger.info("Starting AirDraw Demo...")
        if not self.source.start():
            self.logger.error("Failed to start video capture")
            return

        cv2.namedWindow(self.WINDOW_NAME)
        cv2.setMouseCallback(self.WINDOW_NAME, self._mouse_callback)

        try:
            while True:
                result = self.pipeline.process_next(timeout=0.5)
                if result is None:
                    if not self.source.is_running:
                        self.logger.info("Video source ended")
                        break
                    continue

                cv2.imshow(self.WINDOW_NAME, self._render(self.last_packet.frame))
                key = cv2.waitKey(1) & 0xFF
                if key != 255 and not self._handle_key(key):
                    break
        except KeyboardInterrupt:
            self.logger.info("Interrupted")
        finally:
            self.source.stop()
            cv2.destroyAllWindows()
            meta = self.source.metadata
            self.logger.info(
                f"Demo stopped. {self.pipeline.processed} frames processed, "
                f"{meta.dropped_frames} dropped, {meta.skipped_frames} skipped."
            )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="AirDraw Marker Tracking Demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Controls:
  LEFT CLICK   Calibrate on the marker
  D            Toggle drawing
  M            Cycle detection mode
  C            Clear strokes
  R            Reset position history
  Q/ESC        Quit

Examples:
  python main_demo.py                      # Default webcam (0)
  python main_demo.py --source 1           # Webcam index 1
  python main_demo.py --source clip.mp4    # Video file
  python main_demo.py --mode color         # Color detector only
        """
    )
    parser.add_argument(
        "--source", "-s",
        default=0,
        help="Video source: camera index (0, 1, ...) or file path"
    )
    parser.add_argument(
        "--resolution", "-r",
        type=str,
        default=None,
        help="Resolution as WxH (e.g., 1280x720)"
    )
    parser.add_argument(
        "--mode",
        choices=["combined", "color", "shape"],
        default=None,
        help="Detection mode (default from AIRDRAW_DETECTION_MODE or combined)"
    )
    parser.add_argument(
        "--no-mirror",
        action="store_true",
        help="Do not flip frames horizontally"
    )
    parser.add_argument(
        "--skip-frames",
        action="store_true",
        help="Process only every other frame"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default from AIRDRAW_LOG_LEVEL or INFO)"
    )

    args = parser.parse_args()
    configure_logging(args.log_level)

    try:
        source = int(args.source)
    except ValueError:
        source = args.source

    resolution = None
    if args.resolution:
        try:
            w, h = args.resolution.lower().split('x')
            resolution = (int(w), int(h))
        except ValueError:
            print(f"Invalid resolution format: {args.resolution}")
            sys.exit(1)

    overrides = {}
    if args.mode:
        overrides["detection_mode"] = DetectionMode.parse(args.mode)
    settings = TrackerSettings.from_env(**overrides)

    print("\n" + "=" * 60)
    print("  AirDraw Marker Tracking")
    print("=" * 60)
    print(f"  Source: {source}")
    print(f"  Mode: {settings.detection_mode.value}")
    print(f"  Adaptive: {'Enabled' if settings.adaptive_detection_enabled else 'Disabled'}")
    print(f"  Smoothing: {settings.smoothing_strength:.2f}" if settings.smoothing_enabled else "  Smoothing: off")
    print("=" * 60 + "\n")

    demo = AirDrawDemo(
        source=source,
        settings=settings,
        resolution=resolution,
        mirror=not args.no_mirror,
        skip_frames=args.skip_frames,
    )
    demo.run()


if __name__ == "__main__":
    main()
