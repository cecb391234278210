from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from PIL import Image

from textbehind.device.config import ProcessingConfig, fit_within
from textbehind.device.profiler import DeviceProfile
from textbehind.errors import SegmentationFailureError, SegmentationTimeoutError, TextBehindError
from textbehind.logs import get_logger
from textbehind.segment.backend import Segmenter
from textbehind.segment.fallback import apply_mask, create_fallback_mask, mask_from_cutout, resize_mask


log = get_logger("segment")

DESKTOP_TIMEOUT_S = 30.0
MOBILE_TIMEOUT_S = 22.5

# Synthetic progress band while waiting on a segmenter that does not report progress.
SYNTHETIC_START = 45.0
SYNTHETIC_END = 70.0
SYNTHETIC_STEP = 2.5

StatusCallback = Callable[[str, bool], None]
ErrorCallback = Callable[[BaseException, str], None]
StepProgress = Callable[[str, float], None]


class SegmentState(str, Enum):
  IDLE = "idle"
  REQUESTED = "requested"
  RESOLVED = "resolved"
  TIMED_OUT = "timed_out"
  FAILED = "failed"
  FALLBACK_RESOLVED = "fallback_resolved"


@dataclass(frozen=True)
class SegmentationResult:
  cutout: Image.Image
  mask: np.ndarray
  state: SegmentState
  reason: Optional[str] = None
  elapsed_s: float = 0.0

  @property
  def used_fallback(self) -> bool:
    return self.state == SegmentState.FALLBACK_RESOLVED

  @property
  def size(self):
    return self.cutout.size


@dataclass
class _Call:
  done: threading.Event = field(default_factory=threading.Event)
  settled: bool = False
  output: Any = None
  error: Optional[BaseException] = None


class SegmentationAdapter:
  """
  Runs the external segmenter against a timeout and always hands back a
  usable mask.

  The external call runs on a daemon thread. Whichever settles first, the
  call or the timeout, decides the outcome. A call that loses the race is
  not cancelled, only disregarded: its side effects may still happen and its
  eventual result is dropped.
  """

  def __init__(
    self,
    segmenter: Optional[Segmenter],
    profile: DeviceProfile,
    config: ProcessingConfig,
    settings: Optional[Dict[str, Any]] = None,
    on_status: Optional[StatusCallback] = None,
    on_error: Optional[ErrorCallback] = None,
  ):
    self.segmenter = segmenter
    self.profile = profile
    self.config = config
    seg = settings or {}
    self.desktop_timeout_s = float(seg.get("timeout_s", DESKTOP_TIMEOUT_S))
    self.mobile_timeout_s = float(seg.get("mobile_timeout_s", MOBILE_TIMEOUT_S))
    self.progress_interval_s = float(seg.get("progress_interval_s", 1.0))
    self.on_status = on_status
    self.on_error = on_error
    self.state = SegmentState.IDLE
    self.history: List[SegmentState] = [SegmentState.IDLE]

  @property
  def timeout_s(self) -> float:
    return self.mobile_timeout_s if self.profile.is_mobile else self.desktop_timeout_s

  def update(self, profile: DeviceProfile, config: ProcessingConfig) -> None:
    self.profile = profile
    self.config = config

  def _transition(self, state: SegmentState) -> None:
    self.state = state
    self.history.append(state)
    log.debug("segmentation -> %s", state.value)

  def _status(self, message: str, processing: bool) -> None:
    if self.on_status is not None:
      self.on_status(message, processing)

  def run(self, image: Image.Image, on_progress: Optional[StepProgress] = None) -> SegmentationResult:
    t0 = time.monotonic()
    self.history = [SegmentState.IDLE]
    self.state = SegmentState.IDLE
    source = image.convert("RGB")

    def progress(step: str, pct: float) -> None:
      if on_progress is not None:
        on_progress(step, pct)

    self._status("Removing background...", True)
    progress("Running background removal AI", SYNTHETIC_START)
    self._transition(SegmentState.REQUESTED)

    if self.segmenter is None:
      self._transition(SegmentState.FAILED)
      return self._fallback(source, SegmentationFailureError("no segmentation service configured"), t0, progress)

    w, h = fit_within(source.width, source.height, self.config.max_dimension)
    seg_input = source if (w, h) == source.size else source.resize((w, h), resample=Image.LANCZOS)

    call = _Call()

    def forward(pct: float) -> None:
      # Progress of a call that already lost the race is dropped.
      if not call.settled:
        progress("Processing background removal", pct)

    def work() -> None:
      try:
        call.output = self.segmenter.segment(seg_input, forward if self.segmenter.reports_progress else None)
      except Exception as e:
        call.error = e
      finally:
        call.done.set()
        if call.settled:
          log.debug("late segmentation result disregarded")

    threading.Thread(target=work, name="textbehind-segment", daemon=True).start()
    if not self.segmenter.reports_progress:
      self._start_ticker(call, progress)

    finished = call.done.wait(self.timeout_s)
    call.settled = True

    if not finished:
      self._transition(SegmentState.TIMED_OUT)
      return self._fallback(source, SegmentationTimeoutError(self.timeout_s), t0, progress)

    if call.error is not None:
      self._transition(SegmentState.FAILED)
      err = SegmentationFailureError(f"segmentation failed: {call.error}")
      err.__cause__ = call.error
      return self._fallback(source, err, t0, progress)

    try:
      cutout, mask = self._normalize(call.output, source)
    except Exception as e:
      self._transition(SegmentState.FAILED)
      err = SegmentationFailureError(f"unusable segmentation output: {e}")
      err.__cause__ = e
      return self._fallback(source, err, t0, progress)

    self._transition(SegmentState.RESOLVED)
    elapsed = time.monotonic() - t0
    progress("AI processing complete, generating mask", 75)
    progress("Finalizing results", 95)
    log.info("segmentation resolved in %.2fs (%sx%s)", elapsed, source.width, source.height)
    self._status("Background removed", False)
    return SegmentationResult(cutout=cutout, mask=mask, state=SegmentState.RESOLVED, elapsed_s=elapsed)

  def _start_ticker(self, call: _Call, progress: StepProgress) -> None:
    interval = self.progress_interval_s

    def tick() -> None:
      pct = SYNTHETIC_START
      while not call.done.wait(interval):
        if call.settled:
          return
        pct = min(SYNTHETIC_END, pct + SYNTHETIC_STEP)
        progress("Processing background removal", pct)

    threading.Thread(target=tick, name="textbehind-segment-progress", daemon=True).start()

  def _normalize(self, output: Any, source: Image.Image):
    if isinstance(output, tuple):
      cutout, mask = output
    else:
      cutout, mask = output, None
    if not isinstance(cutout, Image.Image):
      raise TypeError(f"expected a PIL image cutout, got {type(cutout).__name__}")

    if mask is None:
      mask = mask_from_cutout(cutout, source.size)
    else:
      mask = np.asarray(mask)
      if mask.ndim == 3:
        mask = mask[:, :, -1]
      if mask.dtype != np.uint8:
        # Float masks are confidences in [0..1].
        mask = np.round(np.clip(mask.astype(np.float32), 0.0, 1.0) * 255.0).astype(np.uint8)
      mask = resize_mask(mask, source.size)

    if mask.shape[:2] != (source.height, source.width):
      raise ValueError(f"mask shape {mask.shape} does not match source {source.size}")
    return apply_mask(source, mask), mask

  def _fallback(
    self,
    source: Image.Image,
    reason: TextBehindError,
    t0: float,
    progress: StepProgress,
  ) -> SegmentationResult:
    log.warning("segmentation fallback: %s", reason)
    if self.on_error is not None:
      self.on_error(reason, "segmentation")
    progress("Trying alternative processing method", 50)

    mask = create_fallback_mask(source)
    cutout = apply_mask(source, mask)

    self._transition(SegmentState.FALLBACK_RESOLVED)
    progress("Alternative processing complete", 95)
    self._status("Used simplified subject detection", False)
    return SegmentationResult(
      cutout=cutout,
      mask=mask,
      state=SegmentState.FALLBACK_RESOLVED,
      reason=str(reason),
      elapsed_s=time.monotonic() - t0,
    )
