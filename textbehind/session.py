from __future__ import annotations

import io
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from PIL import Image

from textbehind.device.config import ProcessingConfig, check_input_budget, resolve_processing_config
from textbehind.device.profiler import CapabilityProvider, DeviceProfile, DeviceProfiler, HostCapabilities
from textbehind.errors import RenderContextUnavailableError, TextBehindError, ValidationError, classify_error, to_user_error
from textbehind.export.pipeline import ExportBlob, export_composite, export_filename
from textbehind.logs import get_logger
from textbehind.render.compositor import CompositeResult, Layer, LayerKind, ViewTransform, composite
from textbehind.render.scheduler import UpdateScheduler
from textbehind.render.surfaces import SurfacePool
from textbehind.render.text_layer import TextStyle, render_text_layer
from textbehind.segment.adapter import SegmentationAdapter, SegmentationResult
from textbehind.segment.backend import Segmenter, build_segmenter
from textbehind.settings import load_settings


log = get_logger("session")

StatusCallback = Callable[[str, bool], None]
ErrorCallback = Callable[[BaseException, str], None]
ProgressCallback = Callable[[str, float], None]


class EditingSession:
  """
  Everything one editing session owns: device profile, processing config,
  surface pool, update scheduler, segmentation adapter and the current
  image with its mask.

  Create one per session and close() it at the end; nothing here is shared
  between sessions.
  """

  def __init__(
    self,
    provider: Optional[CapabilityProvider] = None,
    settings: Optional[Dict[str, Any]] = None,
    segmenter: Optional[Segmenter] = None,
    quality_intent: Optional[float] = None,
    on_status: Optional[StatusCallback] = None,
    on_error: Optional[ErrorCallback] = None,
    on_progress: Optional[ProgressCallback] = None,
  ):
    self.settings = settings if settings is not None else load_settings()
    seg_settings = self.settings.get("segmentation") or {}

    self.on_status = on_status
    self.on_error = on_error
    self.on_progress = on_progress

    self.profiler = DeviceProfiler(provider or HostCapabilities(self.settings.get("device") or {}))
    self.quality_intent = quality_intent
    self.profile: DeviceProfile = self.profiler.profile()
    self.config: ProcessingConfig = resolve_processing_config(self.profile, quality_intent)

    self.pool = SurfacePool(self.profile)
    self.scheduler = UpdateScheduler(self.profile)
    if segmenter is None:
      segmenter = build_segmenter(seg_settings)
    self.adapter = SegmentationAdapter(
      segmenter,
      self.profile,
      self.config,
      seg_settings,
      on_status=self._status,
      on_error=self._error,
    )
    self.profiler.on_change(self._apply_profile)

    self._lock = threading.Lock()
    self.generation = 0
    self.image: Optional[Image.Image] = None
    self.segmentation: Optional[SegmentationResult] = None
    self.closed = False

    log.info(
      "session ready: tier=%s max_dim=%s quality=%.2f pool=%s",
      self.profile.tier.value,
      self.config.max_dimension,
      self.config.quality_threshold,
      self.pool.capacity,
    )

  def __enter__(self) -> "EditingSession":
    return self

  def __exit__(self, exc_type, exc, tb) -> None:
    self.close()

  def _status(self, message: str, processing: bool) -> None:
    if self.on_status is not None:
      self.on_status(message, processing)

  def _error(self, error: BaseException, context: str) -> None:
    if self.on_error is not None:
      self.on_error(error, context)

  def _progress(self, step: str, pct: float) -> None:
    if self.on_progress is not None:
      self.on_progress(step, pct)

  def _fail(self, exc: BaseException, context: str) -> TextBehindError:
    err = to_user_error(exc, context)
    log.error("%s failed: %s", context, exc)
    self._error(err, err.context or context)
    return err

  @property
  def mask(self):
    seg = self.segmentation
    return seg.mask if seg is not None else None

  def load_image(self, data: bytes) -> Tuple[int, int]:
    """
    Decode an upload and make it the session's current image. Any mask for
    the previous image is dropped and an in-flight segmentation of it will
    not be applied.
    """
    self._status("Uploading image...", True)
    try:
      check_input_budget(self.config, len(data))
      try:
        img = Image.open(io.BytesIO(data))
      except Exception as e:
        raise TextBehindError(f"decode failed: {e}", context="upload", kind=classify_error(e)) from e
      # Header size is known before the pixels are decoded.
      work_w, work_h = check_input_budget(self.config, len(data), img.width, img.height)
      try:
        img.load()
      except Exception as e:
        raise TextBehindError(f"decode failed: {e}", context="upload", kind=classify_error(e)) from e
      rgb = img.convert("RGB")
      if rgb.size != (work_w, work_h):
        log.info("downscaling upload %sx%s -> %sx%s", rgb.width, rgb.height, work_w, work_h)
        rgb = rgb.resize((work_w, work_h), resample=Image.LANCZOS)
    except Exception as e:
      self._status("Upload failed", False)
      raise self._fail(e, "upload")

    with self._lock:
      self.generation += 1
      self.image = rgb
      self.segmentation = None
    self._status("Image loaded", False)
    return rgb.size

  def segment(self) -> Optional[SegmentationResult]:
    """
    Extract the subject of the current image. Always yields a mask (real or
    fallback); returns None when a newer image replaced this one meanwhile.
    """
    with self._lock:
      generation = self.generation
      image = self.image
    if image is None:
      raise self._fail(RenderContextUnavailableError("no image loaded", context="segmentation"), "segmentation")

    result = self.adapter.run(image, on_progress=self._progress)

    with self._lock:
      if generation != self.generation:
        log.info("discarding segmentation for replaced image (generation %d, now %d)", generation, self.generation)
        return None
      self.segmentation = result
    return result

  def _render_size(self, image: Image.Image) -> Tuple[int, int]:
    return self.pool.target_size(image.width, image.height)

  def compose(self, style: TextStyle, transform: Optional[ViewTransform] = None) -> CompositeResult:
    try:
      style.validate()
      if transform is not None:
        transform.validate()
    except ValidationError as e:
      self._error(e, e.context)
      raise

    with self._lock:
      image = self.image
      seg = self.segmentation
    if image is None or seg is None:
      what = "image" if image is None else "subject mask"
      raise self._fail(RenderContextUnavailableError(f"render context unavailable: no {what}", context="render"), "render")

    w, h = self._render_size(image)
    scale = w / float(image.width)
    background = image.convert("RGBA")
    foreground = seg.cutout
    if (w, h) != image.size:
      background = background.resize((w, h), resample=Image.LANCZOS)
      foreground = foreground.resize((w, h), resample=Image.LANCZOS)
      style = replace(style, font_size=style.font_size * scale)

    try:
      with self.pool.borrow(w, h) as bg, self.pool.borrow(w, h) as text, self.pool.borrow(w, h) as fg:
        bg.paste(background, (0, 0))
        render_text_layer(style, w, h, surface=text)
        fg.paste(foreground, (0, 0))
        return composite(
          [
            Layer(LayerKind.BACKGROUND, bg),
            Layer(LayerKind.TEXT, text),
            Layer(LayerKind.FOREGROUND, fg),
          ],
          transform,
        )
    except Exception as e:
      raise self._fail(e, "render")

  def export(
    self,
    style: TextStyle,
    fmt: Optional[str] = None,
    quality: Optional[float] = None,
  ) -> Tuple[ExportBlob, str]:
    exp = self.settings.get("export") or {}
    fmt = fmt or str(exp.get("format") or "png")
    if quality is None:
      quality = exp.get("quality")

    self._status("Exporting image...", True)
    try:
      result = self.compose(style)
    except TextBehindError:
      # compose has already reported the error.
      self._status("Export failed", False)
      raise
    try:
      blob = export_composite(result, fmt, quality)
    except Exception as e:
      self._status("Export failed", False)
      raise self._fail(e, "export")
    self._status("Image exported", False)
    return blob, export_filename(style.content, blob.ext)

  def _apply_profile(self, profile: DeviceProfile, event: str) -> None:
    self.profile = profile
    self.config = resolve_processing_config(profile, self.quality_intent)
    self.pool.resize_limits(profile)
    self.scheduler.apply_profile(profile)
    self.adapter.update(profile, self.config)
    log.debug("applied profile after '%s': %s", event, self.config.to_dict())

  def on_environment_change(self, event: str, **changes: Any) -> DeviceProfile:
    """
    Re-profile after orientation, resize or battery events. `changes` are
    forwarded to the capability provider when it accepts updates.
    """
    if changes:
      update = getattr(self.profiler.provider, "update", None)
      if update is None:
        raise TypeError(f"{type(self.profiler.provider).__name__} does not accept capability changes")
      update(**changes)
    return self.profiler.notify_change(event)

  def close(self) -> None:
    if self.closed:
      return
    self.closed = True
    self.scheduler.clear_all()
    self.pool.cleanup()
    with self._lock:
      self.generation += 1
      self.image = None
      self.segmentation = None
    log.debug("session closed")
