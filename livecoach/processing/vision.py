"""
LiveCoach — Vision Detector adapters

Frame path: base64 JPEG → OpenCV BGR ndarray → detector → DetectedObject[].
Detection runs in a ThreadPoolExecutor so inference never blocks the
event loop.

Two detectors:
  • YoloDetector     — Ultralytics YOLO weights (optional `vision` extra)
  • ScriptedDetector — deterministic labels for demos and tests
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, List, Optional, Sequence

import cv2
import numpy as np

from ..core.config import sdk_cfg
from ..core.interfaces import VisionDetector
from ..core.models import DetectedObject

logger = logging.getLogger("livecoach.vision")


def decode_frame(base64_jpeg: str) -> Optional[np.ndarray]:
    """Decode a base64 JPEG (optionally a data URL) into a BGR frame."""
    if "," in base64_jpeg[:64]:
        base64_jpeg = base64_jpeg.split(",", 1)[1]
    try:
        img_bytes = base64.b64decode(base64_jpeg)
    except (ValueError, TypeError):
        return None
    nparr = np.frombuffer(img_bytes, np.uint8)
    if nparr.size == 0:
        return None
    return cv2.imdecode(nparr, cv2.IMREAD_COLOR)


# ---------------------------------------------------------------------------
# YOLO
# ---------------------------------------------------------------------------

class YoloDetector:
    """Ultralytics YOLO. Boxes are normalised to fractions of the frame."""

    def __init__(self, model_path: str = sdk_cfg.yolo_model_path, conf: float = 0.5, imgsz: int = 640):
        self._model_path = model_path
        self._conf = conf
        self._imgsz = imgsz
        self._model: Any = None

    def initialize(self) -> None:
        if self._model is not None:
            return
        if not self._model_path:
            raise FileNotFoundError("No YOLO model configured (YOLO_MODEL_PATH)")
        p = Path(self._model_path)
        if not p.is_absolute():
            p = Path.cwd() / p
        if not p.exists():
            raise FileNotFoundError(f"Model not found: {p}")
        from ultralytics import YOLO
        self._model = YOLO(str(p))
        logger.info(f"YOLO model loaded: {p}")

    def detect(self, frame: np.ndarray) -> List[DetectedObject]:
        if self._model is None:
            self.initialize()
        h, w = frame.shape[:2]
        results = self._model.predict(frame, conf=self._conf, imgsz=self._imgsz, verbose=False)
        out: List[DetectedObject] = []
        for r in results:
            if r.boxes is None:
                continue
            names = r.names or {}
            for box in r.boxes:
                cls_id = int(box.cls.item())
                x1, y1, x2, y2 = (float(v) for v in box.xyxy[0].tolist())
                out.append(DetectedObject(
                    label=names.get(cls_id, f"class_{cls_id}"),
                    score=float(box.conf.item()),
                    box=(x1 / w, y1 / h, x2 / w, y2 / h),
                ))
        return out


# ---------------------------------------------------------------------------
# Scripted
# ---------------------------------------------------------------------------

class ScriptedDetector:
    """
    Returns whatever labels the script yields, regardless of frame content.
    `script` is either a fixed label list or a callable of elapsed seconds.
    """

    def __init__(self, script: Any = (), fail_init: bool = False):
        self._script = script
        self._fail_init = fail_init
        self._started = 0.0

    def initialize(self) -> None:
        if self._fail_init:
            raise RuntimeError("Scripted detector configured to fail")
        self._started = time.time()

    def set_labels(self, labels: Sequence[str]) -> None:
        self._script = tuple(labels)

    def detect(self, frame: Any) -> List[DetectedObject]:
        if callable(self._script):
            labels = self._script(time.time() - self._started)
        else:
            labels = self._script
        return [DetectedObject(label=lbl, score=1.0) for lbl in labels]


def default_detector() -> VisionDetector:
    """YOLO when weights are configured, otherwise the scripted demo detector."""
    if sdk_cfg.yolo_model_path:
        return YoloDetector()
    return ScriptedDetector()


# ---------------------------------------------------------------------------
# Async runner
# ---------------------------------------------------------------------------

class FrameAnalyzer:
    """Runs decode + detect off the event loop, one frame at a time."""

    def __init__(self, detector: VisionDetector, session_id: str = ""):
        self.detector = detector
        self.session_id = session_id
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lc-vision")
        self._busy = False
        self.frames_detected = 0
        self.last_inference_ms = 0.0

    async def initialize(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self.detector.initialize)

    async def analyze(self, base64_jpeg: str) -> Optional[List[DetectedObject]]:
        """None when the frame was dropped (busy or undecodable)."""
        if self._busy:
            return None
        self._busy = True
        try:
            loop = asyncio.get_running_loop()
            t0 = time.perf_counter()
            result = await loop.run_in_executor(self._executor, self._analyze_sync, base64_jpeg)
            self.last_inference_ms = round((time.perf_counter() - t0) * 1000, 1)
            if result is not None:
                self.frames_detected += 1
            return result
        except Exception as e:
            logger.warning(f"[{self.session_id}] Frame detection error: {e}")
            return None
        finally:
            self._busy = False

    def _analyze_sync(self, base64_jpeg: str) -> Optional[List[DetectedObject]]:
        frame = decode_frame(base64_jpeg)
        if frame is None:
            return None
        return self.detector.detect(frame)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

