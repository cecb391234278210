from __future__ import annotations

import threading

import numpy as np
import pytest
from PIL import Image

from smokeutil import make_settings, png_bytes, run_tests, subject_image
from textbehind.device.config import MB
from textbehind.device.profiler import CapabilityProvider, StaticCapabilities, Tier
from textbehind.errors import ErrorKind, RenderContextUnavailableError, ResourceExhaustionError, TextBehindError, ValidationError
from textbehind.render.compositor import ViewTransform
from textbehind.render.text_layer import TextStyle
from textbehind.segment.adapter import SegmentState
from textbehind.segment.backend import CallableSegmenter
from textbehind.session import EditingSession


STYLE = TextStyle(content="Hi there", font_size=40, color="#ffee00")


def _session(provider=None, segmenter=None, **seg):
  events = {"status": [], "error": [], "progress": []}
  s = EditingSession(
    provider=provider or StaticCapabilities(screen=(1280, 800), pixel_ratio=2.0, cpu_count=4),
    settings=make_settings(**seg),
    segmenter=segmenter,
    on_status=lambda msg, busy: events["status"].append((msg, busy)),
    on_error=lambda err, ctx: events["error"].append((err, ctx)),
    on_progress=lambda step, pct: events["progress"].append(pct),
  )
  return s, events


def test_session_wires_profile_into_components():
  s, _ = _session()
  assert s.profile.tier == Tier.REGULAR
  assert s.config.max_dimension == 512
  assert s.pool.capacity == 5
  assert s.scheduler.delay_ms == 200
  s.close()


def test_load_image_keeps_small_and_downscales_large():
  s, events = _session()
  assert s.load_image(png_bytes(subject_image((300, 200)))) == (300, 200)
  assert s.generation == 1
  assert s.load_image(png_bytes(subject_image((1200, 800)))) == (512, 341)
  assert s.generation == 2
  assert events["status"][0] == ("Uploading image...", True)
  assert events["status"][-1] == ("Image loaded", False)


def test_oversized_upload_is_resource_exhaustion():
  s, events = _session()
  with pytest.raises(ResourceExhaustionError):
    s.load_image(b"\x00" * (3 * MB + 1))
  assert events["error"][-1][1] == "upload"
  assert s.image is None


def test_high_pixel_upload_with_few_bytes_is_rejected():
  s, events = _session()
  data = png_bytes(Image.new("L", (4000, 3000), 128))
  assert len(data) < s.config.max_input_bytes
  with pytest.raises(ResourceExhaustionError) as info:
    s.load_image(data)
  assert "exceeds threshold" in str(info.value)
  assert events["status"][-1] == ("Upload failed", False)
  assert events["error"][-1][1] == "upload"
  assert s.image is None


def test_undecodable_upload_is_invalid_format():
  s, events = _session()
  with pytest.raises(TextBehindError) as info:
    s.load_image(b"definitely not an image")
  assert info.value.kind == ErrorKind.INVALID_FORMAT
  assert info.value.context == "upload"
  assert events["error"][-1][1] == "upload"


def test_segment_without_service_uses_fallback():
  s, events = _session()
  s.load_image(png_bytes(subject_image((300, 200))))
  result = s.segment()
  assert result.state == SegmentState.FALLBACK_RESOLVED
  assert s.mask.shape == (200, 300)
  assert s.mask[100, 150] > 0
  assert events["progress"][-1] == 95
  assert any(ctx == "segmentation" for _, ctx in events["error"])


def test_new_upload_invalidates_in_flight_segmentation():
  entered = threading.Event()
  go = threading.Event()

  def slow(img):
    entered.set()
    go.wait(5.0)
    return img.convert("RGBA")

  s, _ = _session(segmenter=CallableSegmenter(slow), timeout_s=10.0)
  s.load_image(png_bytes(subject_image((120, 80))))
  out = []
  worker = threading.Thread(target=lambda: out.append(s.segment()))
  worker.start()
  assert entered.wait(5.0)
  s.load_image(png_bytes(subject_image((90, 60))))
  go.set()
  worker.join(5.0)

  assert out == [None]
  assert s.segmentation is None
  assert s.image.size == (90, 60)


def test_compose_requires_mask():
  s, events = _session()
  s.load_image(png_bytes(subject_image((100, 80))))
  with pytest.raises(RenderContextUnavailableError):
    s.compose(STYLE)
  assert events["error"][-1][1] == "render"


def test_compose_validates_before_borrowing():
  s, events = _session()
  s.load_image(png_bytes(subject_image((100, 80))))
  s.segment()
  with pytest.raises(ValidationError):
    s.compose(TextStyle(content="", font_size=-3))
  assert s.pool.allocations == 0
  assert events["error"][-1][1] == "validation"


def test_compose_puts_text_behind_subject_and_reuses_surfaces():
  def left_half(img):
    cutout = img.convert("RGBA")
    alpha = np.zeros((img.height, img.width), dtype=np.uint8)
    alpha[:, : img.width // 2] = 255
    cutout.putalpha(Image.fromarray(alpha, mode="L"))
    return cutout

  s, _ = _session(segmenter=CallableSegmenter(left_half))
  src = Image.new("RGB", (200, 100), (10, 20, 30))
  s.load_image(png_bytes(src))
  assert s.segment().state == SegmentState.RESOLVED

  style = TextStyle(content="WWWWWWWWWW", font_size=60, color="#ffffff")
  result = s.compose(style)
  assert (result.width, result.height) == (200, 100)
  assert result.image.getpixel((50, 50))[:3] == (10, 20, 30)
  right = np.asarray(result.image)[:, 100:, :3]
  assert (right != np.array([10, 20, 30], dtype=np.uint8)).any()
  assert s.pool.lent_count == 0
  assert s.pool.allocations == 3

  again = s.compose(style)
  assert s.pool.allocations == 3
  assert again.image.tobytes() == result.image.tobytes()

  zoomed = s.compose(style, ViewTransform(zoom_pct=150, pan_x=5))
  assert zoomed.image.size == result.image.size


def test_export_is_untransformed_and_named():
  s, events = _session()
  s.load_image(png_bytes(subject_image((160, 120))))
  s.segment()
  blob, filename = s.export(STYLE, "jpeg", 0.8)
  assert blob.mime == "image/jpeg"
  assert (blob.width, blob.height) == (160, 120)
  assert filename.startswith("text-behind-image_Hi_there_")
  assert filename.endswith(".jpg")
  assert ("Exporting image...", True) in events["status"]
  assert events["status"][-1] == ("Image exported", False)

  png, name = s.export(STYLE)
  assert png.mime == "image/png" and name.endswith(".png")


def test_failed_export_clears_processing_status():
  s, events = _session()
  s.load_image(png_bytes(subject_image((80, 60))))
  with pytest.raises(RenderContextUnavailableError):
    s.export(STYLE)
  assert events["status"][-1] == ("Export failed", False)
  assert len([ctx for _, ctx in events["error"] if ctx == "render"]) == 1

  s.segment()
  with pytest.raises(ValidationError):
    s.export(TextStyle(content="", font_size=10))
  assert events["status"][-1] == ("Export failed", False)

  blob, _ = s.export(STYLE)
  assert (blob.width, blob.height) == (80, 60)
  assert events["status"][-1] == ("Image exported", False)


def test_environment_change_reconfigures():
  caps = StaticCapabilities(screen=(1920, 1080), pixel_ratio=2.0, cpu_count=8, memory_mb=8192)
  s, _ = _session(provider=caps)
  assert s.config.max_dimension == 768
  profile = s.on_environment_change("battery", battery=(10, False))
  assert profile.battery_low
  assert s.config.max_dimension == 512
  assert s.config.quality_threshold == pytest.approx(0.70)
  assert s.adapter.config is s.config
  assert s.scheduler.frame_interval_s() == 1.0 / 30

  profile = s.on_environment_change("resize", screen=(800, 600))
  assert profile.tier == Tier.LOW_END
  assert s.pool.capacity == 3
  assert s.scheduler.delay_ms == 300


def test_environment_change_needs_updatable_provider():
  s, _ = _session(provider=CapabilityProvider())
  with pytest.raises(TypeError):
    s.on_environment_change("resize", screen=(10, 10))
  assert s.on_environment_change("orientation").tier == Tier.LOW_END


def test_close_releases_everything():
  with EditingSession(provider=CapabilityProvider(), settings=make_settings()) as s:
    s.load_image(png_bytes(subject_image((64, 64))))
    s.segment()
    s.compose(STYLE)
    s.scheduler.debounce("k", lambda: None, delay_ms=60_000)()
    assert len(s.pool) == 3
    assert s.scheduler.pending() == 1
  assert s.closed
  assert len(s.pool) == 0
  assert s.scheduler.pending() == 0
  assert s.image is None
  s.close()


def main() -> int:
  return run_tests(globals(), "session_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
