from __future__ import annotations

import math
from typing import Tuple

import cv2
import numpy as np
from PIL import Image


# Subject heuristic thresholds (brightness on 0..255, center weight on 0..1).
CENTER_WEIGHT_MIN = 0.2
BRIGHTNESS_MIN = 30.0
BRIGHTNESS_MAX = 220.0
SUM_MIN = 90.0
MAJORITY = 5  # of 9 in a 3x3 window
FEATHER = 0.25


def clamp01(x: np.ndarray) -> np.ndarray:
  return np.clip(x, 0.0, 1.0)


def ellipse_mask(
  h: int,
  w: int,
  cx: float,
  cy: float,
  rx: float,
  ry: float,
  feather: float = 0.08,
) -> np.ndarray:
  """
  Soft ellipse mask in [0..1], float32, shape (H,W).
  """
  if h <= 0 or w <= 0:
    raise ValueError("Invalid h,w")
  if rx <= 0 or ry <= 0:
    raise ValueError("rx, ry must be > 0")
  f = float(feather)
  if f < 0.0:
    raise ValueError("feather must be >= 0")

  yy, xx = np.mgrid[0:h, 0:w].astype(np.float32)
  nx = (xx - cx) / rx
  ny = (yy - cy) / ry
  d = np.sqrt(nx * nx + ny * ny)

  fw = max(1e-6, f)
  t = clamp01((d - (1.0 - fw)) / (2.0 * fw))
  s = t * t * (3.0 - 2.0 * t)
  return (1.0 - s).astype(np.float32)


def center_weight(h: int, w: int) -> np.ndarray:
  """1 at the frame center falling linearly to 0 at the corners."""
  cx, cy = w / 2.0, h / 2.0
  max_d = math.sqrt(cx * cx + cy * cy) or 1.0
  yy, xx = np.mgrid[0:h, 0:w].astype(np.float32)
  d = np.sqrt((xx - cx) ** 2 + (yy - cy) ** 2)
  return (1.0 - d / max_d).astype(np.float32)


def _majority_smooth(binary: np.ndarray) -> np.ndarray:
  counts = cv2.boxFilter(
    binary.astype(np.float32),
    -1,
    (3, 3),
    normalize=False,
    borderType=cv2.BORDER_CONSTANT,
  )
  out = counts >= MAJORITY
  # Border pixels have no full neighbourhood; they are background.
  out[0, :] = False
  out[-1, :] = False
  out[:, 0] = False
  out[:, -1] = False
  return out


def create_fallback_mask(image: Image.Image) -> np.ndarray:
  """
  Deterministic stand-in for a segmentation mask: assumes the subject sits
  in the middle of the frame and is neither blown out nor near-black.

  Returns uint8 alpha (H, W) with the same size as `image`.
  """
  rgb = np.asarray(image.convert("RGB"), dtype=np.float32)
  h, w = rgb.shape[:2]

  total = rgb.sum(axis=2)
  brightness = total / 3.0
  weight = center_weight(h, w)

  subject = (
    (weight > CENTER_WEIGHT_MIN)
    & (brightness > BRIGHTNESS_MIN)
    & (brightness < BRIGHTNESS_MAX)
    & (total > SUM_MIN)
  )
  smoothed = _majority_smooth(subject)

  falloff = ellipse_mask(h, w, cx=w / 2.0, cy=h / 2.0, rx=max(w / 2.0, 1e-3), ry=max(h / 2.0, 1e-3), feather=FEATHER)
  alpha = smoothed.astype(np.float32) * falloff
  return np.round(alpha * 255.0).astype(np.uint8)


def apply_mask(image: Image.Image, mask: np.ndarray) -> Image.Image:
  if mask.shape[:2] != (image.height, image.width):
    raise ValueError(f"mask {mask.shape[1]}x{mask.shape[0]} does not match image {image.width}x{image.height}")
  cutout = image.convert("RGBA")
  cutout.putalpha(Image.fromarray(np.ascontiguousarray(mask, dtype=np.uint8), mode="L"))
  return cutout


def mask_from_cutout(cutout: Image.Image, size: Tuple[int, int]) -> np.ndarray:
  """Alpha of a cut-out resampled to `size`, keeping soft edges."""
  if cutout.mode not in ("RGBA", "LA", "PA"):
    cutout = cutout.convert("RGBA")
  alpha = cutout.getchannel("A")
  if alpha.size != tuple(size):
    alpha = alpha.resize(tuple(size), resample=Image.BILINEAR)
  return np.asarray(alpha, dtype=np.uint8).copy()


def resize_mask(mask: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
  w, h = int(size[0]), int(size[1])
  if mask.shape[:2] == (h, w):
    return mask
  return cv2.resize(mask.astype(np.uint8), (w, h), interpolation=cv2.INTER_LINEAR)
