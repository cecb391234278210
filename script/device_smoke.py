from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from smokeutil import run_tests
from textbehind.device.config import (
  HIGH_END_CONFIG,
  LOW_END_CONFIG,
  MB,
  REGULAR_CONFIG,
  check_input_budget,
  fit_within,
  performance_mode,
  resolve_processing_config,
)
from textbehind.device.profiler import (
  CapabilityProvider,
  DeviceProfiler,
  HostCapabilities,
  StaticCapabilities,
  Tier,
  classify_tier,
  parse_screen,
)
from textbehind.errors import ResourceExhaustionError, ValidationError


def _desktop(**kw):
  base = dict(screen=(1920, 1080), pixel_ratio=2.0, cpu_count=8, memory_mb=8192)
  base.update(kw)
  return StaticCapabilities(**base)


def _laptop(**kw):
  base = dict(screen=(1280, 800), pixel_ratio=2.0, cpu_count=4)
  base.update(kw)
  return StaticCapabilities(**base)


def test_high_end_profile():
  p = DeviceProfiler(_desktop()).profile()
  assert p.tier == Tier.HIGH_END
  assert p.estimated_memory_mb == 8192
  assert p.battery_pct is None and not p.battery_low
  assert resolve_processing_config(p) == HIGH_END_CONFIG


def test_regular_profile_uses_memory_default():
  p = DeviceProfiler(_laptop()).profile()
  assert p.tier == Tier.REGULAR
  assert p.estimated_memory_mb == 2048
  cfg = resolve_processing_config(p)
  assert cfg == REGULAR_CONFIG
  assert (cfg.max_dimension, cfg.max_input_bytes, cfg.memory_threshold_mb) == (512, 3 * MB, 40)


def test_dense_screen_is_estimated_high_end():
  p = DeviceProfiler(StaticCapabilities(screen=(414, 896), pixel_ratio=3.0, cpu_count=6)).profile()
  assert p.estimated_memory_mb == 4096
  assert p.tier == Tier.HIGH_END


def test_empty_provider_degrades_to_low_end():
  p = DeviceProfiler(CapabilityProvider()).profile()
  assert p.tier == Tier.LOW_END
  assert p.pixel_ratio == 1.0
  assert p.estimated_memory_mb == 1024
  assert resolve_processing_config(p) == LOW_END_CONFIG


def test_low_end_triggers():
  assert classify_tier((800, 600), 2.0, 8) == Tier.LOW_END
  assert classify_tier((1920, 1080), 1.5, 8) == Tier.LOW_END
  assert classify_tier((1920, 1080), 2.0, 2) == Tier.LOW_END
  assert classify_tier((1920, 1080), 2.0, 8, 2048) == Tier.REGULAR


def test_failing_probe_is_absent():
  class Broken(CapabilityProvider):
    def cpu_count(self):
      raise RuntimeError("no sysconf")

    def pixel_ratio(self):
      return 2.0

    def screen_size(self):
      return (1920, 1080)

  p = DeviceProfiler(Broken()).profile()
  assert p.tier == Tier.REGULAR


def test_battery_override_caps_dimension_and_quality():
  p = DeviceProfiler(_desktop(battery=(15, False))).profile()
  assert p.battery_low
  cfg = resolve_processing_config(p)
  assert cfg.max_dimension == 512
  assert cfg.quality_threshold == pytest.approx(0.70)
  assert cfg.max_input_bytes == HIGH_END_CONFIG.max_input_bytes

  charging = DeviceProfiler(_desktop(battery=(15, True))).profile()
  assert not charging.battery_low
  assert resolve_processing_config(charging) == HIGH_END_CONFIG


def test_quality_intent_only_replaces_quality():
  p = DeviceProfiler(_desktop(battery=(10, False))).profile()
  cfg = resolve_processing_config(p, quality_intent=0.95)
  assert cfg.quality_threshold == pytest.approx(0.95)
  assert cfg.max_dimension == 512


def test_quality_intent_out_of_range_is_rejected():
  p = DeviceProfiler(_laptop()).profile()
  for bad in (0, -0.5, 1.5, "high"):
    with pytest.raises(ValidationError):
      resolve_processing_config(p, quality_intent=bad)


def test_config_rules_hold_for_every_tier():
  providers = [CapabilityProvider(), _laptop(), _desktop(), _desktop(battery=(5, False)), _laptop(battery=(19, False))]
  for provider in providers:
    cfg = resolve_processing_config(DeviceProfiler(provider).profile())
    assert cfg.max_dimension > 0
    assert 0 < cfg.quality_threshold <= 1
    assert cfg.max_input_bytes > 0
    assert sorted(cfg.to_dict()) == ["max_dimension", "max_input_bytes", "memory_threshold_mb", "quality_threshold"]


def test_notify_change_rebuilds_profile():
  provider = _desktop()
  profiler = DeviceProfiler(provider)
  first = profiler.profile()
  seen = []
  profiler.on_change(lambda profile, event: seen.append((profile, event)))

  provider.update(battery=(8, False))
  second = profiler.notify_change("battery")

  assert first.battery_pct is None
  assert second.battery_low
  assert seen == [(second, "battery")]
  assert profiler.current is second

  with pytest.raises(ValueError):
    provider.update(gpu="fast")


def test_performance_mode():
  profiler = DeviceProfiler(_desktop())
  assert performance_mode(profiler.profile()) == "high"
  assert performance_mode(profiler.profile().with_battery(60, False)) == "high"
  assert performance_mode(profiler.profile().with_battery(35, False)) == "balanced"
  assert performance_mode(profiler.profile().with_battery(10, False)) == "battery-saver"
  assert performance_mode(profiler.profile().with_battery(10, True)) == "high"


def test_host_capabilities_read_proc_and_sys():
  with tempfile.TemporaryDirectory() as tmp:
    root = Path(tmp)
    (root / "proc").mkdir()
    (root / "proc" / "meminfo").write_text("MemTotal:        8192000 kB\nMemFree: 1 kB\n", encoding="utf-8")
    bat = root / "sys" / "class" / "power_supply" / "BAT0"
    bat.mkdir(parents=True)
    (bat / "capacity").write_text("42\n", encoding="utf-8")
    (bat / "status").write_text("Discharging\n", encoding="utf-8")

    caps = HostCapabilities({"screen": "2560x1440", "pixel_ratio": 2}, sys_root=tmp)
    assert caps.device_memory_mb() == 8000
    assert caps.battery() == (42, False)
    assert caps.screen_size() == (2560, 1440)
    assert caps.pixel_ratio() == 2.0

    empty = HostCapabilities(sys_root=str(root / "missing"))
    assert empty.device_memory_mb() is None
    assert empty.battery() is None


def test_parse_screen():
  assert parse_screen("390x844") == (390, 844)
  assert parse_screen(" 1920 X 1080 ") == (1920, 1080)
  assert parse_screen("0x10") is None
  assert parse_screen(None) is None
  assert parse_screen("wide") is None


def test_fit_within():
  assert fit_within(2000, 1000, 512) == (512, 256)
  assert fit_within(1200, 800, 512) == (512, 341)
  assert fit_within(300, 200, 512) == (300, 200)


def test_input_budget():
  cfg = REGULAR_CONFIG
  assert check_input_budget(cfg, 1000) is None
  assert check_input_budget(cfg, 1000, 2000, 1000) == (512, 256)

  with pytest.raises(ResourceExhaustionError) as info:
    check_input_budget(cfg, 3 * MB + 1, 100, 100)
  assert info.value.suggestion == "Please use a smaller image."
  assert info.value.context == "upload"


def test_memory_threshold_uses_decoded_size():
  for cfg in (LOW_END_CONFIG, REGULAR_CONFIG, HIGH_END_CONFIG):
    with pytest.raises(ResourceExhaustionError) as info:
      check_input_budget(cfg, 1000, 8000, 8000)
    assert "exceeds threshold" in str(info.value)

  # 3000x3000 RGBA is 36MB: over the low-end threshold, under the regular one.
  with pytest.raises(ResourceExhaustionError):
    check_input_budget(LOW_END_CONFIG, 1000, 3000, 3000)
  assert check_input_budget(REGULAR_CONFIG, 1000, 3000, 3000) == (512, 512)


def main() -> int:
  return run_tests(globals(), "device_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
