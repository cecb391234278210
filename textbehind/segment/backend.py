from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from PIL import Image

try:
  import requests
except Exception:  # pragma: no cover
  requests = None  # type: ignore


ProgressCallback = Callable[[float], None]
# (cutout RGBA image, alpha mask or None when it should be read from the cutout)
SegmentOutput = Tuple[Image.Image, Optional[np.ndarray]]


class Segmenter:
  """
  External subject-extraction collaborator. segment() may raise or never
  return; SegmentationAdapter bounds how long anyone waits for it.
  """

  reports_progress = False

  def segment(self, image: Image.Image, on_progress: Optional[ProgressCallback] = None) -> SegmentOutput:
    raise NotImplementedError


class CallableSegmenter(Segmenter):
  def __init__(self, fn: Callable[..., Any], reports_progress: bool = False):
    self._fn = fn
    self.reports_progress = bool(reports_progress)

  def segment(self, image: Image.Image, on_progress: Optional[ProgressCallback] = None) -> SegmentOutput:
    if self.reports_progress:
      out = self._fn(image, on_progress)
    else:
      out = self._fn(image)
    if isinstance(out, tuple):
      cutout, mask = out
      return cutout, mask
    return out, None


def _decode_base64_image(image_base64: str) -> Image.Image:
  if "," in image_base64 and image_base64.strip().lower().startswith("data:"):
    image_base64 = image_base64.split(",", 1)[1]
  data = base64.b64decode(image_base64, validate=False)
  im = Image.open(io.BytesIO(data))
  im.load()
  return im


@dataclass
class RemoteSegmenterConfig:
  url: str
  endpoint: str = "/segment"
  timeout_s: int = 120


class RemoteSegmenter(Segmenter):
  """
  HTTP background-removal service. Sends the image as base64 PNG and accepts
  either a PNG body or JSON with `cutout_base64` (and optional `mask_base64`).
  """

  def __init__(self, cfg: RemoteSegmenterConfig):
    if requests is None:  # pragma: no cover
      raise RuntimeError("requests is not installed")
    self._cfg = cfg

  def segment(self, image: Image.Image, on_progress: Optional[ProgressCallback] = None) -> SegmentOutput:
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format="PNG")
    img_b64 = base64.b64encode(buf.getvalue()).decode("ascii")

    payload: Dict[str, Any] = {
      "image_base64": img_b64,
      "format": "png",
    }
    endpoint = str(self._cfg.endpoint or "/segment")
    if not endpoint.startswith("/"):
      endpoint = "/" + endpoint
    resp = requests.post(self._cfg.url.rstrip("/") + endpoint, json=payload, timeout=int(self._cfg.timeout_s))
    resp.raise_for_status()

    ctype = (resp.headers.get("content-type") or "").lower()
    if ctype.startswith("image/"):
      cutout = Image.open(io.BytesIO(resp.content))
      cutout.load()
      return cutout, None

    data = resp.json()
    raw = data.get("cutout_base64") or data.get("image_base64")
    if not raw:
      raise ValueError("segmentation response has no cutout image")
    cutout = _decode_base64_image(str(raw))

    mask: Optional[np.ndarray] = None
    mask_raw = data.get("mask_base64")
    if mask_raw:
      mask = np.asarray(_decode_base64_image(str(mask_raw)).convert("L"), dtype=np.uint8)
    return cutout, mask


def build_segmenter(seg_settings: Dict[str, Any]) -> Optional[Segmenter]:
  url = seg_settings.get("url")
  if not url:
    return None
  return RemoteSegmenter(
    RemoteSegmenterConfig(
      url=str(url),
      endpoint=str(seg_settings.get("endpoint") or "/segment"),
      timeout_s=int(seg_settings.get("http_timeout_s", 120)),
    )
  )
