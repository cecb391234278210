from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from textbehind.device.profiler import HIGH_MEMORY_MB, DeviceProfile
from textbehind.logs import get_logger


log = get_logger("scheduler")

TimerFactory = Callable[[float, Callable[[], None]], Any]

_MISSING = object()


def default_delay_ms(profile: DeviceProfile) -> int:
  if profile.is_low_end:
    return 300
  if profile.estimated_memory_mb >= HIGH_MEMORY_MB:
    return 100
  return 200


def default_interval_ms(profile: DeviceProfile) -> int:
  if profile.is_low_end:
    return 100  # ~10Hz
  if profile.estimated_memory_mb >= HIGH_MEMORY_MB:
    return 33  # ~30Hz
  return 50  # ~20Hz


def values_similar(a: Any, b: Any) -> bool:
  if isinstance(a, (int, float)) and isinstance(b, (int, float)) and not isinstance(a, bool) and not isinstance(b, bool):
    return abs(a - b) < 1
  return a == b


class UpdateScheduler:
  """
  Debounce / throttle primitives keyed by a caller-chosen identifier, with
  timings derived from the device profile.

  clear_all() must be called when the owning session goes away; cancelled
  callbacks never run, even if their timer thread already woke up.
  """

  def __init__(
    self,
    profile: DeviceProfile,
    clock: Callable[[], float] = time.monotonic,
    timer_factory: Optional[TimerFactory] = None,
  ):
    self._clock = clock
    self._timer_factory = timer_factory or _thread_timer
    self._timers: Dict[str, Any] = {}
    self._last_values: Dict[str, Any] = {}
    self._last_run: Dict[str, float] = {}
    self._lock = threading.Lock()
    self.apply_profile(profile)

  def apply_profile(self, profile: DeviceProfile) -> None:
    self.profile = profile
    self.delay_ms = default_delay_ms(profile)
    self.interval_ms = default_interval_ms(profile)

  def frame_interval_s(self) -> float:
    fps = 30 if (self.profile.is_low_end or self.profile.battery_low) else 60
    return 1.0 / fps

  def _delay(self, delay_ms: Optional[int]) -> int:
    return self.delay_ms if delay_ms is None else int(delay_ms)

  def pending(self) -> int:
    with self._lock:
      return len(self._timers)

  def _schedule(self, key: str, fn: Callable[..., Any], args: tuple, kwargs: dict, delay_ms: int) -> None:
    holder: Dict[str, Any] = {}

    def fire() -> None:
      with self._lock:
        if self._timers.get(key) is not holder.get("timer"):
          return
        del self._timers[key]
      fn(*args, **kwargs)

    with self._lock:
      existing = self._timers.pop(key, None)
      if existing is not None:
        existing.cancel()
      timer = self._timer_factory(delay_ms / 1000.0, fire)
      holder["timer"] = timer
      self._timers[key] = timer
    timer.start()

  def debounce(self, key: str, fn: Callable[..., Any], delay_ms: Optional[int] = None) -> Callable[..., None]:
    """Without an explicit delay_ms the current tier delay applies at each call."""

    def call(*args: Any, **kwargs: Any) -> None:
      self._schedule(key, fn, args, kwargs, self._delay(delay_ms))

    return call

  def throttle(self, key: str, fn: Callable[..., Any], interval_ms: Optional[int] = None) -> Callable[..., bool]:
    def call(*args: Any, **kwargs: Any) -> bool:
      interval = self.interval_ms if interval_ms is None else int(interval_ms)
      now = self._clock()
      with self._lock:
        last = self._last_run.get(key)
        if last is not None and (now - last) * 1000.0 < interval:
          return False
        self._last_run[key] = now
      fn(*args, **kwargs)
      return True

    return call

  def smart_debounce(
    self,
    key: str,
    fn: Callable[..., Any],
    value_getter: Callable[[], Any],
    delay_ms: Optional[int] = None,
  ) -> Callable[..., bool]:
    def call(*args: Any, **kwargs: Any) -> bool:
      current = value_getter()
      with self._lock:
        last = self._last_values.get(key, _MISSING)
        if last is not _MISSING and values_similar(last, current):
          return False
        self._last_values[key] = current
      self._schedule(key, fn, args, kwargs, self._delay(delay_ms))
      return True

    return call

  def cancel(self, key: str) -> bool:
    with self._lock:
      timer = self._timers.pop(key, None)
    if timer is None:
      return False
    timer.cancel()
    return True

  def clear_all(self) -> None:
    with self._lock:
      timers = list(self._timers.values())
      self._timers.clear()
      self._last_values.clear()
      self._last_run.clear()
    for timer in timers:
      timer.cancel()
    if timers:
      log.debug("cancelled %d pending update(s)", len(timers))


def _thread_timer(delay_s: float, fn: Callable[[], None]) -> threading.Timer:
  t = threading.Timer(delay_s, fn)
  t.daemon = True
  return t
