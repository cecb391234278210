from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from textbehind.device.profiler import CapabilityProvider, StaticCapabilities, parse_screen
from textbehind.segment.backend import Segmenter, build_segmenter
from textbehind.session import EditingSession
from textbehind.settings import load_settings


DEVICE_KEYS = ("screen", "pixel_ratio", "cpu_count", "memory_mb", "max_surface_dim", "is_mobile", "battery_pct", "is_charging")


@dataclass
class SessionRuntime:
  session: EditingSession
  # One request at a time per session; the surface pool is not shared between composites.
  lock: threading.Lock = field(default_factory=threading.Lock)


def capabilities_from_overrides(device: Dict[str, Any]) -> StaticCapabilities:
  battery = None
  if device.get("battery_pct") is not None:
    battery = (int(device["battery_pct"]), bool(device.get("is_charging")))
  return StaticCapabilities(
    screen=parse_screen(device.get("screen")),
    pixel_ratio=device.get("pixel_ratio"),
    cpu_count=device.get("cpu_count"),
    memory_mb=device.get("memory_mb"),
    max_surface_dim=device.get("max_surface_dim"),
    is_mobile=device.get("is_mobile"),
    battery=battery,
  )


class SessionRegistry:
  def __init__(self, settings: Optional[Dict[str, Any]] = None):
    self.settings = settings if settings is not None else load_settings()
    self.segmenter_factory: Callable[[], Optional[Segmenter]] = lambda: build_segmenter(self.settings["segmentation"])
    self._sessions: Dict[str, SessionRuntime] = {}
    self._lock = threading.Lock()

  def create(self, quality_intent: Optional[float] = None, device: Optional[Dict[str, Any]] = None) -> str:
    provider: Optional[CapabilityProvider] = capabilities_from_overrides(device) if device else None
    session = EditingSession(
      provider=provider,
      settings=self.settings,
      segmenter=self.segmenter_factory(),
      quality_intent=quality_intent,
    )
    session_id = uuid.uuid4().hex
    with self._lock:
      self._sessions[session_id] = SessionRuntime(session=session)
    return session_id

  def get(self, session_id: str) -> Optional[SessionRuntime]:
    with self._lock:
      return self._sessions.get(session_id)

  def remove(self, session_id: str) -> bool:
    with self._lock:
      runtime = self._sessions.pop(session_id, None)
    if runtime is None:
      return False
    runtime.session.close()
    return True

  def close_all(self) -> None:
    with self._lock:
      runtimes = list(self._sessions.values())
      self._sessions.clear()
    for runtime in runtimes:
      runtime.session.close()

  def __len__(self) -> int:
    with self._lock:
      return len(self._sessions)
