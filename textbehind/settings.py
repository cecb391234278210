from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


_PACKAGE_ROOT = Path(__file__).resolve().parent


def _load_yaml_config(path: Path) -> Dict[str, Any]:
  if not path.exists():
    return {}
  with path.open("r", encoding="utf-8") as f:
    data = yaml.safe_load(f) or {}
  return data if isinstance(data, dict) else {}


def _env_float(name: str) -> Optional[float]:
  raw = (os.environ.get(name) or "").strip()
  if not raw:
    return None
  try:
    return float(raw)
  except ValueError:
    return None


def _env_int(name: str) -> Optional[int]:
  v = _env_float(name)
  return int(v) if v is not None else None


def _opt_int(v: Any) -> Optional[int]:
  if v is None:
    return None
  try:
    return int(v)
  except (TypeError, ValueError):
    return None


def _opt_float(v: Any) -> Optional[float]:
  if v is None:
    return None
  try:
    return float(v)
  except (TypeError, ValueError):
    return None


def config_path() -> Path:
  env_path = (os.environ.get("TEXTBEHIND_CONFIG") or "").strip()
  if env_path:
    return Path(env_path)
  return _PACKAGE_ROOT / "config.yaml"


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
  """
  Deployment settings (segmentation service, device overrides, logging, export).

  Resolution order per key: environment variable, config.yaml, built-in default.
  """
  cfg = _load_yaml_config(path or config_path())

  seg = cfg.get("segmentation", {}) if isinstance(cfg, dict) else {}
  dev = cfg.get("device", {}) if isinstance(cfg, dict) else {}
  log = cfg.get("logging", {}) if isinstance(cfg, dict) else {}
  exp = cfg.get("export", {}) if isinstance(cfg, dict) else {}
  seg = seg if isinstance(seg, dict) else {}
  dev = dev if isinstance(dev, dict) else {}
  log = log if isinstance(log, dict) else {}
  exp = exp if isinstance(exp, dict) else {}

  url = (os.environ.get("TEXTBEHIND_SEGMENT_URL") or "").strip() or seg.get("url") or None

  timeout_s = _env_float("TEXTBEHIND_SEGMENT_TIMEOUT")
  if timeout_s is None:
    timeout_s = float(seg.get("timeout_s", 30.0))
  mobile_timeout_s = _env_float("TEXTBEHIND_SEGMENT_MOBILE_TIMEOUT")
  if mobile_timeout_s is None:
    mobile_timeout_s = float(seg.get("mobile_timeout_s", 22.5))

  mobile_raw = os.environ.get("TEXTBEHIND_MOBILE")
  if mobile_raw is not None and mobile_raw.strip():
    is_mobile: Optional[bool] = mobile_raw.strip().lower() in ("1", "true", "yes", "on")
  else:
    is_mobile = dev.get("is_mobile") if isinstance(dev.get("is_mobile"), bool) else None

  screen = (os.environ.get("TEXTBEHIND_SCREEN") or "").strip() or dev.get("screen")

  return {
    "segmentation": {
      "url": str(url) if url else None,
      "endpoint": str(seg.get("endpoint") or "/segment"),
      # Cap on the HTTP transport itself; the adapter timeout is what bounds the caller.
      "http_timeout_s": int(seg.get("http_timeout_s", 120)),
      "timeout_s": timeout_s,
      "mobile_timeout_s": mobile_timeout_s,
      "progress_interval_s": float(seg.get("progress_interval_s", 1.0)),
    },
    "device": {
      "screen": str(screen) if screen else None,
      "pixel_ratio": _env_float("TEXTBEHIND_PIXEL_RATIO") or _opt_float(dev.get("pixel_ratio")),
      "cpu_count": _env_int("TEXTBEHIND_CPU_COUNT") or _opt_int(dev.get("cpu_count")),
      "memory_mb": _env_int("TEXTBEHIND_MEMORY_MB") or _opt_int(dev.get("memory_mb")),
      "max_surface_dim": _env_int("TEXTBEHIND_MAX_SURFACE") or _opt_int(dev.get("max_surface_dim")),
      "is_mobile": is_mobile,
    },
    "logging": {
      "debug_dir": os.environ.get("TEXTBEHIND_DEBUG_DIR") or log.get("debug_dir") or None,
    },
    "export": {
      "format": str(exp.get("format") or "png"),
      "quality": float(exp.get("quality", 1.0)),
    },
  }
