from __future__ import annotations

import io
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, Tuple

import numpy as np
from PIL import Image


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
  sys.path.insert(0, str(REPO_ROOT))


def run_tests(namespace: Dict[str, Any], label: str) -> int:
  """Run every test_* function of a smoke module; pytest collects the same functions."""
  failed = 0
  for name in sorted(namespace):
    fn = namespace[name]
    if not name.startswith("test_") or not callable(fn):
      continue
    try:
      fn()
    except Exception:
      failed += 1
      print(f"[FAIL] {label}.{name}", file=sys.stderr)
      traceback.print_exc()
  if failed:
    print(f"[FAIL] {label}: {failed} test(s) failed", file=sys.stderr)
    return 1
  print(f"[OK] {label}")
  return 0


def subject_image(size: Tuple[int, int] = (300, 200)) -> Image.Image:
  """Dark frame with a mid-grey block in the middle standing in for a subject."""
  w, h = size
  arr = np.full((h, w, 3), 12, dtype=np.uint8)
  arr[h // 4 : 3 * h // 4, w // 4 : 3 * w // 4] = (150, 120, 100)
  return Image.fromarray(arr, mode="RGB")


def png_bytes(img: Image.Image) -> bytes:
  buf = io.BytesIO()
  img.save(buf, format="PNG")
  return buf.getvalue()


def make_settings(**segmentation: Any) -> Dict[str, Any]:
  seg = {
    "url": None,
    "endpoint": "/segment",
    "http_timeout_s": 5,
    "timeout_s": 2.0,
    "mobile_timeout_s": 1.5,
    "progress_interval_s": 0.05,
  }
  seg.update(segmentation)
  return {
    "segmentation": seg,
    "device": {},
    "logging": {"debug_dir": None},
    "export": {"format": "png", "quality": 1.0},
  }
