from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from textbehind.device.profiler import HIGH_MEMORY_MB, DeviceProfile
from textbehind.errors import ResourceExhaustionError, ValidationError


MB = 1024 * 1024

BATTERY_MAX_DIMENSION = 512
BATTERY_MAX_QUALITY = 0.70


@dataclass(frozen=True)
class ProcessingConfig:
  max_dimension: int
  max_input_bytes: int
  quality_threshold: float
  memory_threshold_mb: int

  def to_dict(self) -> Dict[str, float]:
    return {
      "max_dimension": self.max_dimension,
      "max_input_bytes": self.max_input_bytes,
      "quality_threshold": self.quality_threshold,
      "memory_threshold_mb": self.memory_threshold_mb,
    }


LOW_END_CONFIG = ProcessingConfig(max_dimension=384, max_input_bytes=2 * MB, quality_threshold=0.70, memory_threshold_mb=20)
REGULAR_CONFIG = ProcessingConfig(max_dimension=512, max_input_bytes=3 * MB, quality_threshold=0.75, memory_threshold_mb=40)
HIGH_END_CONFIG = ProcessingConfig(max_dimension=768, max_input_bytes=5 * MB, quality_threshold=0.80, memory_threshold_mb=60)


def _check_quality_intent(quality_intent: float) -> float:
  try:
    q = float(quality_intent)
  except (TypeError, ValueError):
    raise ValidationError([f"quality intent must be a number, got {quality_intent!r}"], context="config") from None
  if not (0.0 < q <= 1.0):
    raise ValidationError([f"quality intent must be in (0, 1], got {q}"], context="config")
  return q


def resolve_processing_config(profile: DeviceProfile, quality_intent: Optional[float] = None) -> ProcessingConfig:
  """
  Tier baseline, then the low-battery cap, then the caller's quality intent.
  The intent only ever replaces the quality threshold, never max_dimension.
  """
  if profile.is_low_end:
    base = LOW_END_CONFIG
  elif profile.estimated_memory_mb >= HIGH_MEMORY_MB:
    base = HIGH_END_CONFIG
  else:
    base = REGULAR_CONFIG

  max_dimension = base.max_dimension
  quality = base.quality_threshold
  if profile.battery_low:
    max_dimension = min(max_dimension, BATTERY_MAX_DIMENSION)
    quality = min(quality, BATTERY_MAX_QUALITY)

  if quality_intent is not None:
    quality = _check_quality_intent(quality_intent)

  return ProcessingConfig(
    max_dimension=int(max_dimension),
    max_input_bytes=int(base.max_input_bytes),
    quality_threshold=float(quality),
    memory_threshold_mb=int(base.memory_threshold_mb),
  )


def performance_mode(profile: DeviceProfile) -> str:
  if profile.battery_pct is None or profile.is_charging or profile.battery_pct > 50:
    return "high"
  if profile.battery_pct > 20:
    return "balanced"
  return "battery-saver"


def fit_within(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
  if width <= max_dimension and height <= max_dimension:
    return int(width), int(height)
  scale = max_dimension / float(max(width, height))
  return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def estimate_rgba_mb(width: int, height: int) -> float:
  return (int(width) * int(height) * 4) / 1e6


def check_input_budget(
  config: ProcessingConfig,
  n_bytes: int,
  width: Optional[int] = None,
  height: Optional[int] = None,
) -> Optional[Tuple[int, int]]:
  """
  Raise ResourceExhaustionError when the upload is over budget. The memory
  estimate uses the decoded size, not the working size. Returns the
  working size, or None when only the byte size was checked (dimensions
  not known yet).
  """
  if n_bytes > config.max_input_bytes:
    raise ResourceExhaustionError(
      f"input is {n_bytes / MB:.1f}MB, limit is {config.max_input_bytes / MB:.1f}MB"
    )
  if width is None or height is None:
    return None
  est = estimate_rgba_mb(width, height)
  if est > config.memory_threshold_mb:
    raise ResourceExhaustionError(
      f"estimated working memory {est:.1f}MB exceeds threshold {config.memory_threshold_mb}MB"
    )
  return fit_within(width, height, config.max_dimension)
