from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from textbehind.logs import get_logger


log = get_logger("device")

LOW_END_SCREEN_PIXELS = 1_000_000
LOW_END_PIXEL_RATIO = 2.0
LOW_END_MAX_CORES = 2
HIGH_MEMORY_MB = 4096
DEFAULT_MAX_SURFACE_DIM = 2048

_SCREEN_RE = re.compile(r"^\s*(\d+)\s*[xX*]\s*(\d+)\s*$")


class Tier(str, Enum):
  LOW_END = "low_end"
  REGULAR = "regular"
  HIGH_END = "high_end"


@dataclass(frozen=True)
class DeviceProfile:
  tier: Tier
  is_mobile: bool
  pixel_ratio: float
  max_surface_dim: int
  estimated_memory_mb: int
  battery_pct: Optional[int] = None
  is_charging: Optional[bool] = None

  @property
  def is_low_end(self) -> bool:
    return self.tier == Tier.LOW_END

  @property
  def battery_low(self) -> bool:
    # Unknown battery counts as "charging, full".
    if self.battery_pct is None:
      return False
    return self.battery_pct < 20 and not bool(self.is_charging)

  def with_battery(self, battery_pct: Optional[int], is_charging: Optional[bool]) -> "DeviceProfile":
    return replace(self, battery_pct=battery_pct, is_charging=is_charging)

  def to_dict(self) -> Dict[str, Any]:
    return {
      "tier": self.tier.value,
      "is_mobile": self.is_mobile,
      "pixel_ratio": self.pixel_ratio,
      "max_surface_dim": self.max_surface_dim,
      "estimated_memory_mb": self.estimated_memory_mb,
      "battery_pct": self.battery_pct,
      "is_charging": self.is_charging,
    }


class CapabilityProvider:
  """
  Optional host capabilities. Every probe returns None when the capability
  is not available; the profiler degrades to documented defaults.
  """

  def screen_size(self) -> Optional[Tuple[int, int]]:
    return None

  def pixel_ratio(self) -> Optional[float]:
    return None

  def cpu_count(self) -> Optional[int]:
    return None

  def device_memory_mb(self) -> Optional[int]:
    return None

  def max_surface_dim(self) -> Optional[int]:
    return None

  def is_mobile(self) -> Optional[bool]:
    return None

  def battery(self) -> Optional[Tuple[int, bool]]:
    return None


class StaticCapabilities(CapabilityProvider):
  def __init__(
    self,
    screen: Optional[Tuple[int, int]] = None,
    pixel_ratio: Optional[float] = None,
    cpu_count: Optional[int] = None,
    memory_mb: Optional[int] = None,
    max_surface_dim: Optional[int] = None,
    is_mobile: Optional[bool] = None,
    battery: Optional[Tuple[int, bool]] = None,
  ):
    self._screen = screen
    self._pixel_ratio = pixel_ratio
    self._cpu_count = cpu_count
    self._memory_mb = memory_mb
    self._max_surface_dim = max_surface_dim
    self._is_mobile = is_mobile
    self._battery = battery

  def screen_size(self) -> Optional[Tuple[int, int]]:
    return self._screen

  def pixel_ratio(self) -> Optional[float]:
    return self._pixel_ratio

  def cpu_count(self) -> Optional[int]:
    return self._cpu_count

  def device_memory_mb(self) -> Optional[int]:
    return self._memory_mb

  def max_surface_dim(self) -> Optional[int]:
    return self._max_surface_dim

  def is_mobile(self) -> Optional[bool]:
    return self._is_mobile

  def battery(self) -> Optional[Tuple[int, bool]]:
    return self._battery

  def set_battery(self, battery: Optional[Tuple[int, bool]]) -> None:
    self._battery = battery

  def update(self, **changes: Any) -> None:
    """Apply an environment change, e.g. update(screen=(800, 1280)) after a rotation."""
    known = ("screen", "pixel_ratio", "cpu_count", "memory_mb", "max_surface_dim", "is_mobile", "battery")
    unknown = sorted(k for k in changes if k not in known)
    if unknown:
      raise ValueError(f"unknown capability change(s): {', '.join(unknown)}")
    for key, value in changes.items():
      setattr(self, f"_{key}", value)


def parse_screen(raw: Optional[str]) -> Optional[Tuple[int, int]]:
  m = _SCREEN_RE.match(raw or "")
  if not m:
    return None
  w, h = int(m.group(1)), int(m.group(2))
  if w <= 0 or h <= 0:
    return None
  return w, h


class HostCapabilities(CapabilityProvider):
  """Probes the machine this process runs on, with settings overrides taking precedence."""

  def __init__(self, overrides: Optional[Dict[str, Any]] = None, sys_root: str = "/"):
    self._ov = dict(overrides or {})
    self._root = Path(sys_root)

  def screen_size(self) -> Optional[Tuple[int, int]]:
    return parse_screen(self._ov.get("screen"))

  def pixel_ratio(self) -> Optional[float]:
    v = self._ov.get("pixel_ratio")
    return float(v) if v else None

  def cpu_count(self) -> Optional[int]:
    v = self._ov.get("cpu_count")
    if v:
      return int(v)
    return os.cpu_count()

  def device_memory_mb(self) -> Optional[int]:
    v = self._ov.get("memory_mb")
    if v:
      return int(v)
    meminfo = self._root / "proc" / "meminfo"
    try:
      for line in meminfo.read_text(encoding="utf-8").splitlines():
        if line.startswith("MemTotal:"):
          kb = int(line.split()[1])
          return kb // 1024
    except (OSError, ValueError, IndexError):
      return None
    return None

  def max_surface_dim(self) -> Optional[int]:
    v = self._ov.get("max_surface_dim")
    return int(v) if v else None

  def is_mobile(self) -> Optional[bool]:
    v = self._ov.get("is_mobile")
    return bool(v) if isinstance(v, bool) else None

  def battery(self) -> Optional[Tuple[int, bool]]:
    supply = self._root / "sys" / "class" / "power_supply"
    try:
      candidates = sorted(p for p in supply.iterdir() if p.name.upper().startswith("BAT"))
    except OSError:
      return None
    for bat in candidates:
      try:
        pct = int((bat / "capacity").read_text(encoding="utf-8").strip())
        status = (bat / "status").read_text(encoding="utf-8").strip().lower()
      except (OSError, ValueError):
        continue
      return max(0, min(100, pct)), status in ("charging", "full")
    return None


def classify_tier(
  screen: Optional[Tuple[int, int]],
  pixel_ratio: float,
  cpu_count: Optional[int],
  estimated_memory_mb: Optional[int] = None,
) -> Tier:
  screen_pixels = None
  if screen is not None:
    screen_pixels = screen[0] * screen[1] * pixel_ratio
  low_end = (
    (screen_pixels is not None and screen_pixels < LOW_END_SCREEN_PIXELS)
    or pixel_ratio < LOW_END_PIXEL_RATIO
    or (cpu_count is not None and cpu_count <= LOW_END_MAX_CORES)
  )
  if low_end:
    return Tier.LOW_END
  if estimated_memory_mb is not None and estimated_memory_mb >= HIGH_MEMORY_MB:
    return Tier.HIGH_END
  return Tier.REGULAR


def estimate_memory_mb(reported_mb: Optional[int], low_end: bool, pixel_ratio: float) -> int:
  if reported_mb:
    return int(reported_mb)
  if low_end:
    return 1024
  if pixel_ratio >= 3:
    return 4096
  return 2048


ProfileListener = Callable[[DeviceProfile, str], None]


class DeviceProfiler:
  """
  Builds immutable DeviceProfile snapshots from a CapabilityProvider and
  re-profiles on environment-change events (orientation, resize, battery).
  """

  def __init__(self, provider: Optional[CapabilityProvider] = None):
    self.provider = provider or CapabilityProvider()
    self._listeners: List[ProfileListener] = []
    self._current: Optional[DeviceProfile] = None

  @property
  def current(self) -> DeviceProfile:
    if self._current is None:
      self._current = self.profile()
    return self._current

  def profile(self) -> DeviceProfile:
    p = self.provider
    pixel_ratio = _safe_probe(p.pixel_ratio) or 1.0
    screen = _safe_probe(p.screen_size)
    cores = _safe_probe(p.cpu_count)
    reported_mb = _safe_probe(p.device_memory_mb)

    low_end = classify_tier(screen, pixel_ratio, cores) == Tier.LOW_END
    memory_mb = estimate_memory_mb(reported_mb, low_end, pixel_ratio)
    tier = classify_tier(screen, pixel_ratio, cores, memory_mb)

    battery = _safe_probe(p.battery)
    battery_pct: Optional[int] = None
    charging: Optional[bool] = None
    if battery is not None:
      battery_pct, charging = int(battery[0]), bool(battery[1])

    max_dim = _safe_probe(p.max_surface_dim) or DEFAULT_MAX_SURFACE_DIM
    profile = DeviceProfile(
      tier=tier,
      is_mobile=bool(_safe_probe(p.is_mobile)),
      pixel_ratio=float(pixel_ratio),
      max_surface_dim=int(max_dim),
      estimated_memory_mb=int(memory_mb),
      battery_pct=battery_pct,
      is_charging=charging,
    )
    self._current = profile
    log.debug("device profile: %s", profile.to_dict())
    return profile

  def on_change(self, listener: ProfileListener) -> None:
    self._listeners.append(listener)

  def notify_change(self, event: str) -> DeviceProfile:
    profile = self.profile()
    log.info("environment change '%s' -> tier=%s battery=%s", event, profile.tier.value, profile.battery_pct)
    for listener in list(self._listeners):
      listener(profile, event)
    return profile


def _safe_probe(fn: Callable[[], Any]) -> Any:
  # Capability probes are best-effort; a failing probe means "not available".
  try:
    return fn()
  except Exception as e:
    log.debug("capability probe %s failed: %s", getattr(fn, "__name__", fn), e)
    return None
