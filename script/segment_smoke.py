from __future__ import annotations

import base64
import io
import threading
import time
from unittest import mock

import numpy as np
import pytest
from PIL import Image

from smokeutil import make_settings, run_tests, subject_image
from textbehind.device.config import resolve_processing_config
from textbehind.device.profiler import CapabilityProvider, DeviceProfiler, StaticCapabilities
from textbehind.errors import SegmentationFailureError, SegmentationTimeoutError
from textbehind.segment.adapter import SegmentationAdapter, SegmentState
from textbehind.segment.backend import CallableSegmenter, RemoteSegmenter, RemoteSegmenterConfig, build_segmenter
from textbehind.segment.fallback import apply_mask, create_fallback_mask, mask_from_cutout


def _adapter(segmenter, mobile=False, low_end=False, **seg):
  if low_end:
    provider = CapabilityProvider()
  else:
    provider = StaticCapabilities(screen=(1280, 800), pixel_ratio=2.0, cpu_count=4, is_mobile=mobile)
  profile = DeviceProfiler(provider).profile()
  events = {"status": [], "error": []}
  adapter = SegmentationAdapter(
    segmenter,
    profile,
    resolve_processing_config(profile),
    make_settings(**seg)["segmentation"],
    on_status=lambda msg, busy: events["status"].append((msg, busy)),
    on_error=lambda err, ctx: events["error"].append((err, ctx)),
  )
  return adapter, events


def _left_half_cutout(img):
  cutout = img.convert("RGBA")
  alpha = np.zeros((img.height, img.width), dtype=np.uint8)
  alpha[:, : img.width // 2] = 255
  cutout.putalpha(Image.fromarray(alpha, mode="L"))
  return cutout


# --- fallback mask ---


def test_fallback_mask_matches_source_size():
  for size in ((37, 23), (1, 1), (300, 200)):
    img = Image.new("RGB", size, (128, 128, 128))
    mask = create_fallback_mask(img)
    assert mask.shape == (size[1], size[0])
    assert mask.dtype == np.uint8


def test_fallback_mask_keeps_center_drops_edges():
  mask = create_fallback_mask(Image.new("RGB", (64, 48), (128, 128, 128)))
  assert mask[24, 32] == 255
  assert mask[0, 0] == 0
  assert mask[47, 63] == 0


def test_fallback_mask_rejects_dark_and_blown_out():
  assert create_fallback_mask(Image.new("RGB", (40, 40), (0, 0, 0))).max() == 0
  assert create_fallback_mask(Image.new("RGB", (40, 40), (255, 255, 255))).max() == 0


def test_fallback_mask_is_deterministic():
  img = subject_image()
  assert np.array_equal(create_fallback_mask(img), create_fallback_mask(img))


def test_apply_mask_and_mask_from_cutout():
  img = subject_image((60, 40))
  mask = np.zeros((40, 60), dtype=np.uint8)
  mask[10:30, 20:40] = 200
  cutout = apply_mask(img, mask)
  assert cutout.mode == "RGBA"
  assert np.array_equal(mask_from_cutout(cutout, (60, 40)), mask)
  assert mask_from_cutout(cutout, (30, 20)).shape == (20, 30)
  with pytest.raises(ValueError):
    apply_mask(img, np.zeros((10, 10), dtype=np.uint8))


# --- adapter ---


def test_timeout_resolves_with_fallback_in_bounded_time():
  release = threading.Event()

  def stuck(img):
    release.wait(5.0)
    return img

  adapter, events = _adapter(CallableSegmenter(stuck), timeout_s=0.2)
  img = subject_image((120, 90))
  t0 = time.monotonic()
  result = adapter.run(img)
  elapsed = time.monotonic() - t0
  release.set()

  assert elapsed < 0.2 + 1.0
  assert result.state == SegmentState.FALLBACK_RESOLVED
  assert result.used_fallback
  assert SegmentState.TIMED_OUT in adapter.history
  assert result.mask.shape == (90, 120)
  assert result.cutout.size == (120, 90)
  assert len(events["error"]) == 1
  err, ctx = events["error"][0]
  assert isinstance(err, SegmentationTimeoutError)
  assert ctx == "segmentation"
  assert events["status"][0] == ("Removing background...", True)
  assert events["status"][-1] == ("Used simplified subject detection", False)


def test_mobile_uses_shorter_timeout():
  adapter, _ = _adapter(None, mobile=True, timeout_s=30.0, mobile_timeout_s=22.5)
  assert adapter.timeout_s == 22.5
  desktop, _ = _adapter(None, timeout_s=30.0, mobile_timeout_s=22.5)
  assert desktop.timeout_s == 30.0


def test_failure_resolves_with_fallback():
  def boom(img):
    raise RuntimeError("boom")

  adapter, events = _adapter(CallableSegmenter(boom))
  result = adapter.run(subject_image((80, 60)))
  assert result.state == SegmentState.FALLBACK_RESOLVED
  assert SegmentState.FAILED in adapter.history
  assert "boom" in (result.reason or "")
  assert isinstance(events["error"][0][0], SegmentationFailureError)


def test_missing_segmenter_uses_fallback():
  adapter, events = _adapter(None)
  result = adapter.run(subject_image((50, 50)))
  assert result.used_fallback
  assert adapter.history == [SegmentState.IDLE, SegmentState.REQUESTED, SegmentState.FAILED, SegmentState.FALLBACK_RESOLVED]
  assert len(events["error"]) == 1


def test_unusable_output_uses_fallback():
  adapter, _ = _adapter(CallableSegmenter(lambda img: "not an image"))
  result = adapter.run(subject_image((50, 40)))
  assert result.used_fallback
  assert result.mask.shape == (40, 50)


def test_resolved_mask_from_cutout_alpha():
  adapter, events = _adapter(CallableSegmenter(_left_half_cutout), progress_interval_s=10.0)
  steps = []
  img = subject_image((120, 80))
  result = adapter.run(img, on_progress=lambda step, pct: steps.append(pct))
  assert result.state == SegmentState.RESOLVED
  assert not result.used_fallback
  assert result.mask.shape == (80, 120)
  assert (result.mask[:, :60] == 255).all()
  assert (result.mask[:, 60:] == 0).all()
  assert steps[0] == 45 and steps[-2:] == [75, 95]
  assert events["error"] == []
  assert events["status"][-1] == ("Background removed", False)


def test_float_mask_is_scaled_to_alpha():
  def with_mask(img):
    m = np.zeros((img.height, img.width), dtype=np.float32)
    m[:, : img.width // 2] = 1.0
    return img.convert("RGBA"), m

  adapter, _ = _adapter(CallableSegmenter(with_mask))
  result = adapter.run(subject_image((40, 20)))
  assert result.state == SegmentState.RESOLVED
  assert result.mask[0, 0] == 255 and result.mask[0, 39] == 0


def test_large_input_is_downscaled_then_mask_restored():
  seen = []

  def record(img):
    seen.append(img.size)
    return _left_half_cutout(img)

  adapter, _ = _adapter(CallableSegmenter(record), low_end=True)
  img = subject_image((1000, 500))
  result = adapter.run(img)
  assert seen == [(384, 192)]
  assert result.state == SegmentState.RESOLVED
  assert result.mask.shape == (500, 1000)
  assert result.cutout.size == (1000, 500)


def test_late_progress_is_disregarded():
  release = threading.Event()
  finished = threading.Event()

  def slow(img, on_progress):
    on_progress(50)
    release.wait(5.0)
    on_progress(60)
    finished.set()
    return img

  adapter, _ = _adapter(CallableSegmenter(slow, reports_progress=True), timeout_s=0.2)
  steps = []
  result = adapter.run(subject_image((40, 40)), on_progress=lambda step, pct: steps.append(pct))
  release.set()
  assert finished.wait(2.0)
  assert result.used_fallback
  assert 60 not in steps
  assert steps[-1] == 95


# --- remote segmenter ---


def _b64_png(img):
  buf = io.BytesIO()
  img.save(buf, format="PNG")
  return base64.b64encode(buf.getvalue()).decode("ascii")


def test_remote_segmenter_json_response():
  img = subject_image((30, 20))
  mask = Image.new("L", (30, 20), 255)
  resp = mock.Mock()
  resp.headers = {"content-type": "application/json"}
  resp.json.return_value = {"cutout_base64": _b64_png(img.convert("RGBA")), "mask_base64": _b64_png(mask)}
  resp.raise_for_status.return_value = None

  with mock.patch("textbehind.segment.backend.requests.post", return_value=resp) as post:
    seg = RemoteSegmenter(RemoteSegmenterConfig(url="http://seg.local/", endpoint="segment", timeout_s=7))
    cutout, out_mask = seg.segment(img)

  url = post.call_args[0][0]
  assert url == "http://seg.local/segment"
  assert post.call_args[1]["timeout"] == 7
  assert post.call_args[1]["json"]["format"] == "png"
  assert cutout.size == (30, 20)
  assert out_mask.shape == (20, 30) and out_mask.min() == 255


def test_remote_segmenter_image_response():
  img = subject_image((30, 20))
  resp = mock.Mock()
  resp.headers = {"content-type": "image/png"}
  resp.content = base64.b64decode(_b64_png(img.convert("RGBA")))
  resp.raise_for_status.return_value = None

  with mock.patch("textbehind.segment.backend.requests.post", return_value=resp):
    cutout, out_mask = RemoteSegmenter(RemoteSegmenterConfig(url="http://seg.local")).segment(img)
  assert cutout.mode == "RGBA"
  assert out_mask is None


def test_build_segmenter():
  assert build_segmenter({"url": None}) is None
  seg = build_segmenter({"url": "http://seg.local", "http_timeout_s": 9})
  assert isinstance(seg, RemoteSegmenter)


def main() -> int:
  return run_tests(globals(), "segment_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
