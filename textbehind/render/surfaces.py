from __future__ import annotations

import math
from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple

from PIL import Image

from textbehind.device.profiler import DeviceProfile
from textbehind.logs import get_logger


log = get_logger("surfaces")

TRANSPARENT = (0, 0, 0, 0)


def pool_capacity(profile: DeviceProfile) -> int:
  return 3 if profile.is_low_end else 5


def tier_surface_cap(profile: DeviceProfile) -> int:
  return 512 if profile.is_low_end else 1024


def capped_size(width: int, height: int, cap: int) -> Tuple[int, int]:
  """Scale (width, height) down so the longer side fits `cap`, keeping aspect."""
  width, height = int(width), int(height)
  if width <= 0 or height <= 0:
    raise ValueError(f"surface size must be positive, got {width}x{height}")
  scale = min(1.0, cap / float(max(width, height)))
  if scale >= 1.0:
    return width, height
  return max(1, int(math.floor(width * scale))), max(1, int(math.floor(height * scale)))


def clear_surface(surface: Image.Image) -> None:
  surface.paste(TRANSPARENT, (0, 0, surface.width, surface.height))


class SurfacePool:
  """
  Reusable RGBA surfaces keyed by size, bounded by device tier.

  A surface handed out by acquire() belongs to exactly one borrower until it
  is passed back to release(); callers must not keep the reference afterwards.
  """

  def __init__(self, profile: DeviceProfile):
    self.capacity = pool_capacity(profile)
    self.max_surface = min(tier_surface_cap(profile), int(profile.max_surface_dim))
    self._pool: List[Image.Image] = []
    self._lent: Dict[int, Image.Image] = {}
    self.allocations = 0

  def __len__(self) -> int:
    return len(self._pool)

  def target_size(self, width: int, height: int) -> Tuple[int, int]:
    return capped_size(width, height, self.max_surface)

  def acquire(self, width: int, height: int) -> Image.Image:
    w, h = self.target_size(width, height)
    for idx, surface in enumerate(self._pool):
      if surface.size == (w, h):
        del self._pool[idx]
        clear_surface(surface)
        self._lent[id(surface)] = surface
        return surface

    surface = Image.new("RGBA", (w, h), TRANSPARENT)
    self.allocations += 1
    if (w, h) != (int(width), int(height)):
      log.debug("surface %sx%s capped to %sx%s", width, height, w, h)
    self._lent[id(surface)] = surface
    return surface

  def release(self, surface: Image.Image) -> None:
    if self._lent.pop(id(surface), None) is None:
      log.warning("release of a surface that is not lent out (%sx%s); ignored", surface.width, surface.height)
      return
    if len(self._pool) < self.capacity:
      clear_surface(surface)
      self._pool.append(surface)
    else:
      surface.close()

  @contextmanager
  def borrow(self, width: int, height: int) -> Iterator[Image.Image]:
    surface = self.acquire(width, height)
    try:
      yield surface
    finally:
      self.release(surface)

  @property
  def lent_count(self) -> int:
    return len(self._lent)

  @property
  def estimated_memory_mb(self) -> float:
    return sum(s.width * s.height * 4 for s in self._pool) / 1e6

  def stats(self) -> Dict[str, float]:
    return {
      "pool_size": len(self._pool),
      "capacity": self.capacity,
      "lent": len(self._lent),
      "allocations": self.allocations,
      "estimated_memory_mb": self.estimated_memory_mb,
    }

  def resize_limits(self, profile: DeviceProfile) -> None:
    """Apply a new device profile; surplus pooled surfaces are destroyed."""
    self.capacity = pool_capacity(profile)
    self.max_surface = min(tier_surface_cap(profile), int(profile.max_surface_dim))
    while len(self._pool) > self.capacity:
      self._pool.pop().close()

  def cleanup(self) -> None:
    for surface in self._pool:
      surface.close()
    self._pool = []
