from __future__ import annotations

import io

from fastapi.testclient import TestClient
from PIL import Image

from smokeutil import png_bytes, run_tests, subject_image
from textbehind.server import app as server_app
from textbehind.server.state import SessionRegistry

DESKTOP = {"screen": "1920x1080", "pixel_ratio": 2, "cpu_count": 8, "memory_mb": 8192}
STYLE = {"content": "HELLO", "font_size": 36, "color": "#ffffff"}


def _client():
  # Fresh registry per test; without a segmentation url every upload uses the fallback mask.
  reg = SessionRegistry(settings=server_app._REG.settings)
  reg.settings["segmentation"]["url"] = None
  server_app._REG = reg
  return TestClient(server_app.app)


def _session_with_image(client, size=(240, 160)):
  sid = client.post("/sessions", json={"device": DESKTOP}).json()["id"]
  r = client.post(f"/sessions/{sid}/image", content=png_bytes(subject_image(size)), headers={"content-type": "image/png"})
  assert r.status_code == 200, r.text
  return sid, r.json()


def test_health():
  r = _client().get("/health")
  assert r.status_code == 200
  body = r.json()
  assert body["status"] == "ok"
  assert set(body["config"]) == {"max_dimension", "max_input_bytes", "quality_threshold", "memory_threshold_mb"}


def test_create_session_with_device_overrides():
  r = _client().post("/sessions", json={"device": DESKTOP, "quality_intent": 0.9})
  assert r.status_code == 200
  body = r.json()
  assert body["profile"]["tier"] == "high_end"
  assert body["config"]["max_dimension"] == 768
  assert body["config"]["quality_threshold"] == 0.9
  assert body["performance_mode"] == "high"


def test_create_session_rejects_bad_quality_intent():
  r = _client().post("/sessions", json={"quality_intent": 2})
  assert r.status_code == 422
  assert r.json()["detail"]["user_message"]


def test_upload_segments_with_fallback():
  client = _client()
  _, body = _session_with_image(client)
  assert body["width"] == 240 and body["height"] == 160
  assert body["state"] == "fallback_resolved"
  assert body["used_fallback"] is True


def test_upload_errors():
  client = _client()
  sid = client.post("/sessions", json={"device": DESKTOP}).json()["id"]
  r = client.post(f"/sessions/{sid}/image", content=b"garbage", headers={"content-type": "image/png"})
  assert r.status_code == 400
  assert r.json()["detail"]["error"] == "invalid_format"
  assert "suggestions" in r.json()["detail"]

  r = client.post(f"/sessions/{sid}/image", content=b"", headers={"content-type": "image/png"})
  assert r.status_code == 400


def test_render_native_and_preview():
  client = _client()
  sid, _ = _session_with_image(client)
  r = client.post(f"/sessions/{sid}/render", json={"style": STYLE})
  assert r.status_code == 200
  assert r.headers["content-type"] == "image/png"
  assert Image.open(io.BytesIO(r.content)).size == (240, 160)

  r = client.post(
    f"/sessions/{sid}/render",
    json={"style": STYLE, "transform": {"zoom_pct": 150, "pan_x": 10}, "container_width": 120, "container_height": 120},
  )
  assert r.status_code == 200
  assert Image.open(io.BytesIO(r.content)).size == (120, 80)


def test_render_rejects_invalid_style_with_all_problems():
  client = _client()
  sid, _ = _session_with_image(client)
  r = client.post(f"/sessions/{sid}/render", json={"style": {"content": "", "font_size": 0, "opacity_pct": 150}})
  assert r.status_code == 422
  detail = r.json()["detail"]
  assert detail["error"] == "validation"
  assert len(detail["problems"]) == 3


def test_render_before_upload_is_conflict():
  client = _client()
  sid = client.post("/sessions").json()["id"]
  r = client.post(f"/sessions/{sid}/render", json={"style": STYLE})
  assert r.status_code == 409


def test_export_returns_named_attachment():
  client = _client()
  sid, _ = _session_with_image(client)
  r = client.post(f"/sessions/{sid}/export", json={"style": STYLE, "format": "jpeg", "quality": 0.8})
  assert r.status_code == 200
  assert r.headers["content-type"] == "image/jpeg"
  disposition = r.headers["content-disposition"]
  assert 'filename="text-behind-image_HELLO_' in disposition
  assert disposition.endswith('.jpg"')
  assert Image.open(io.BytesIO(r.content)).size == (240, 160)

  r = client.post(f"/sessions/{sid}/export", json={"style": STYLE, "format": "bmp"})
  assert r.status_code == 422


def test_unknown_and_deleted_sessions():
  client = _client()
  assert client.post("/sessions/nope/render", json={"style": STYLE}).status_code == 404
  sid = client.post("/sessions").json()["id"]
  assert client.delete(f"/sessions/{sid}").status_code == 200
  assert client.delete(f"/sessions/{sid}").status_code == 404
  assert client.post(f"/sessions/{sid}/export", json={"style": STYLE}).status_code == 404


def main() -> int:
  return run_tests(globals(), "server_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
