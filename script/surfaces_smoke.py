from __future__ import annotations

import threading

from PIL import ImageDraw

from smokeutil import run_tests
from textbehind.device.profiler import CapabilityProvider, DeviceProfiler, StaticCapabilities
from textbehind.render.scheduler import UpdateScheduler, values_similar
from textbehind.render.surfaces import SurfacePool, capped_size


def _low_end():
  return DeviceProfiler(CapabilityProvider()).profile()


def _regular():
  return DeviceProfiler(StaticCapabilities(screen=(1280, 800), pixel_ratio=2.0, cpu_count=4)).profile()


def _high_end():
  return DeviceProfiler(StaticCapabilities(screen=(1920, 1080), pixel_ratio=2.0, cpu_count=8, memory_mb=8192)).profile()


class FakeTimer:
  def __init__(self, delay_s, fn):
    self.delay_s = delay_s
    self.fn = fn
    self.started = False
    self.cancelled = False

  def start(self):
    self.started = True

  def cancel(self):
    self.cancelled = True

  def fire(self):
    if not self.cancelled:
      self.fn()


def _fake_scheduler(profile, clock=None):
  timers = []

  def factory(delay_s, fn):
    t = FakeTimer(delay_s, fn)
    timers.append(t)
    return t

  kwargs = {"timer_factory": factory}
  if clock is not None:
    kwargs["clock"] = clock
  return UpdateScheduler(profile, **kwargs), timers


# --- surface pool ---


def test_pool_limits_follow_tier():
  low = SurfacePool(_low_end())
  assert (low.capacity, low.max_surface) == (3, 512)
  reg = SurfacePool(_regular())
  assert (reg.capacity, reg.max_surface) == (5, 1024)


def test_released_surface_is_reused_by_identity():
  pool = SurfacePool(_regular())
  a = pool.acquire(120, 80)
  pool.release(a)
  b = pool.acquire(120, 80)
  assert b is a
  assert pool.allocations == 1
  assert pool.lent_count == 1


def test_reused_surface_is_cleared():
  pool = SurfacePool(_regular())
  a = pool.acquire(40, 30)
  ImageDraw.Draw(a).rectangle((5, 5, 30, 20), fill=(255, 0, 0, 255))
  pool.release(a)
  b = pool.acquire(40, 30)
  assert b is a
  assert b.getextrema() == ((0, 0), (0, 0), (0, 0), (0, 0))


def test_different_size_allocates():
  pool = SurfacePool(_regular())
  a = pool.acquire(100, 100)
  pool.release(a)
  b = pool.acquire(100, 101)
  assert b is not a
  assert pool.allocations == 2


def test_acquire_caps_to_tier_surface_size():
  pool = SurfacePool(_low_end())
  s = pool.acquire(1000, 500)
  assert s.size == (512, 256)
  assert capped_size(300, 200, 512) == (300, 200)


def test_pool_never_exceeds_capacity():
  pool = SurfacePool(_regular())
  lent = [pool.acquire(10, 10) for _ in range(7)]
  for s in lent:
    pool.release(s)
  assert len(pool) == 5
  assert pool.lent_count == 0


def test_release_of_unknown_surface_is_ignored():
  pool = SurfacePool(_regular())
  other = SurfacePool(_regular()).acquire(10, 10)
  pool.release(other)
  assert len(pool) == 0


def test_borrow_returns_surface_to_pool():
  pool = SurfacePool(_regular())
  with pool.borrow(64, 48) as s:
    assert s.size == (64, 48)
    assert pool.lent_count == 1
  assert pool.lent_count == 0
  assert len(pool) == 1
  assert pool.stats()["pool_size"] == 1


def test_resize_limits_and_cleanup():
  pool = SurfacePool(_regular())
  lent = [pool.acquire(8, 8) for _ in range(5)]
  for s in lent:
    pool.release(s)
  pool.resize_limits(_low_end())
  assert len(pool) == 3
  assert pool.capacity == 3
  pool.cleanup()
  assert len(pool) == 0
  assert pool.estimated_memory_mb == 0


# --- update scheduler ---


def test_delays_follow_tier():
  assert UpdateScheduler(_low_end()).delay_ms == 300
  assert UpdateScheduler(_regular()).delay_ms == 200
  assert UpdateScheduler(_high_end()).delay_ms == 100
  assert UpdateScheduler(_low_end()).interval_ms == 100
  assert UpdateScheduler(_high_end()).interval_ms == 33


def test_debounce_runs_last_call_once():
  sched, timers = _fake_scheduler(_low_end())
  calls = []
  update = sched.debounce("text", calls.append)
  update("a")
  update("ab")
  update("abc")
  assert len(timers) == 3
  assert [t.cancelled for t in timers] == [True, True, False]
  assert timers[-1].delay_s == 0.3
  for t in timers:
    t.fire()
  assert calls == ["abc"]
  assert sched.pending() == 0


def test_cancelled_timer_that_already_woke_does_not_run():
  sched, timers = _fake_scheduler(_regular())
  calls = []
  update = sched.debounce("zoom", calls.append)
  update(1)
  update(2)
  timers[0].fn()
  assert calls == []
  timers[1].fn()
  assert calls == [2]


def test_throttle_drops_calls_inside_interval():
  now = [0.0]
  sched, _ = _fake_scheduler(_low_end(), clock=lambda: now[0])
  calls = []
  pan = sched.throttle("pan", calls.append)
  assert pan(1) is True
  now[0] = 0.05
  assert pan(2) is False
  now[0] = 0.2
  assert pan(3) is True
  assert calls == [1, 3]


def test_smart_debounce_skips_similar_values():
  sched, timers = _fake_scheduler(_regular())
  value = [10.0]
  calls = []
  slider = sched.smart_debounce("size", lambda: calls.append(value[0]), lambda: value[0])
  assert slider() is True
  value[0] = 10.5
  assert slider() is False
  value[0] = 12.0
  assert slider() is True
  assert len(timers) == 2
  timers[-1].fire()
  assert calls == [12.0]


def test_existing_wrappers_follow_profile_change():
  now = [0.0]
  sched, timers = _fake_scheduler(_high_end(), clock=lambda: now[0])
  update = sched.debounce("text", lambda: None)
  pan_calls = []
  pan = sched.throttle("pan", pan_calls.append)
  update()
  assert timers[-1].delay_s == 0.1
  assert pan(1) is True

  sched.apply_profile(_low_end())
  update()
  assert timers[-1].delay_s == 0.3
  now[0] = 0.05
  assert pan(2) is False
  now[0] = 0.1
  assert pan(3) is True
  assert pan_calls == [1, 3]

  fixed = sched.debounce("fixed", lambda: None, delay_ms=20)
  fixed()
  assert timers[-1].delay_s == 0.02


def test_values_similar():
  assert values_similar(1.0, 1.9)
  assert not values_similar(1.0, 2.0)
  assert values_similar("a", "a")
  assert not values_similar(True, 1.5)


def test_clear_all_cancels_everything():
  sched, timers = _fake_scheduler(_regular())
  calls = []
  sched.debounce("a", calls.append)(1)
  sched.debounce("b", calls.append)(2)
  assert sched.pending() == 2
  sched.clear_all()
  assert sched.pending() == 0
  assert all(t.cancelled for t in timers)
  for t in timers:
    t.fn()
  assert calls == []


def test_cancel_single_key():
  sched, timers = _fake_scheduler(_regular())
  sched.debounce("a", lambda: None)()
  assert sched.cancel("a") is True
  assert sched.cancel("a") is False
  assert timers[0].cancelled


def test_frame_interval():
  assert UpdateScheduler(_low_end()).frame_interval_s() == 1.0 / 30
  assert UpdateScheduler(_regular()).frame_interval_s() == 1.0 / 60
  assert UpdateScheduler(_regular().with_battery(10, False)).frame_interval_s() == 1.0 / 30


def test_real_timer_fires():
  sched = UpdateScheduler(_high_end())
  done = threading.Event()
  sched.debounce("real", done.set, delay_ms=10)()
  assert done.wait(2.0)
  sched.clear_all()


def main() -> int:
  return run_tests(globals(), "surfaces_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
