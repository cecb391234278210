from __future__ import annotations

import io
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from PIL import Image

from textbehind.errors import TextBehindError, ValidationError
from textbehind.logs import get_logger
from textbehind.render.compositor import CompositeResult


log = get_logger("export")

# fmt -> (PIL format, mime, extension, lossy)
FORMATS: Dict[str, Tuple[str, str, str, bool]] = {
  "png": ("PNG", "image/png", "png", False),
  "jpeg": ("JPEG", "image/jpeg", "jpg", True),
  "jpg": ("JPEG", "image/jpeg", "jpg", True),
  "webp": ("WEBP", "image/webp", "webp", True),
}

FILENAME_PREFIX = "text-behind-image"
PREVIEW_CHARS = 20
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class ExportBlob:
  data: bytes
  mime: str
  ext: str
  width: int
  height: int


def normalize_format(fmt: str) -> str:
  key = str(fmt or "").strip().lower().lstrip(".")
  if key.startswith("image/"):
    key = key[len("image/"):]
  if key not in FORMATS:
    raise ValidationError([f"unsupported export format {fmt!r}; use one of png, jpeg, webp"], context="export")
  return key


def _quality_percent(quality: Optional[float]) -> int:
  if quality is None:
    return 100
  try:
    q = float(quality)
  except (TypeError, ValueError):
    raise ValidationError([f"quality must be a number, got {quality!r}"], context="export") from None
  if not (0.0 < q <= 1.0):
    raise ValidationError([f"quality must be in (0, 1], got {q}"], context="export")
  return int(round(q * 100))


def export_composite(result: CompositeResult, fmt: str = "png", quality: Optional[float] = None) -> ExportBlob:
  """
  Serialize the native composite. The view transform never reaches here:
  the exported raster does not depend on the current zoom or pan.
  """
  key = normalize_format(fmt)
  pil_format, mime, ext, lossy = FORMATS[key]
  q = _quality_percent(quality)

  img = result.image
  params: Dict[str, object] = {}
  if pil_format == "JPEG":
    # No alpha in JPEG: flatten onto white.
    flat = Image.new("RGB", img.size, (255, 255, 255))
    flat.paste(img, mask=img.getchannel("A") if img.mode == "RGBA" else None)
    img = flat
  if lossy:
    params["quality"] = q

  buf = io.BytesIO()
  try:
    img.save(buf, format=pil_format, **params)
  except Exception as e:
    log.error("export to %s failed: %s", pil_format, e)
    raise TextBehindError(f"could not serialize composite as {pil_format}: {e}", context="export") from e

  data = buf.getvalue()
  log.info("exported %sx%s %s (%d bytes, quality=%s)", result.width, result.height, ext, len(data), q if lossy else "-")
  return ExportBlob(data=data, mime=mime, ext=ext, width=result.width, height=result.height)


def export_filename(text: str, ext: str, now: Optional[datetime] = None) -> str:
  preview = _NON_ALNUM_RE.sub("_", (text or "")[:PREVIEW_CHARS])
  stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
  return f"{FILENAME_PREFIX}_{preview}_{stamp}.{str(ext).lstrip('.')}"
