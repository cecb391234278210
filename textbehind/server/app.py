from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from textbehind.device.config import performance_mode, resolve_processing_config
from textbehind.device.profiler import DeviceProfiler, HostCapabilities
from textbehind.errors import ErrorKind, TextBehindError, ValidationError, recovery_suggestions, to_user_error
from textbehind.export.pipeline import export_composite
from textbehind.logs import get_logger, setup_logger
from textbehind.render.compositor import CompositeResult, render_preview
from textbehind.server.schemas import CreateSessionRequest, ExportRequest, RenderRequest
from textbehind.server.state import DEVICE_KEYS, SessionRegistry, SessionRuntime

_REG = SessionRegistry()
setup_logger(_REG.settings["logging"]["debug_dir"])
log = get_logger("server")

app = FastAPI(title="textbehind server", version="1.0")
app.add_middleware(
  CORSMiddleware,
  allow_origins=["*"],
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)

_STATUS_BY_KIND = {
  ErrorKind.VALIDATION: 422,
  ErrorKind.MEMORY: 413,
  ErrorKind.RENDER_CONTEXT: 409,
  ErrorKind.INVALID_FORMAT: 400,
}


def _http_error(exc: BaseException, context: str) -> HTTPException:
  err = to_user_error(exc, context)
  detail: Dict[str, Any] = err.to_dict()
  suggestions = recovery_suggestions(err.kind)
  if suggestions:
    detail["suggestions"] = suggestions
  status = _STATUS_BY_KIND.get(err.kind, 500)
  if status == 500:
    log.exception("%s failed", context)
  return HTTPException(status_code=status, detail=detail)


def _runtime(session_id: str) -> SessionRuntime:
  runtime = _REG.get(session_id)
  if runtime is None:
    raise HTTPException(status_code=404, detail={"error": "session_not_found", "user_message": "Session not found."})
  return runtime


def _describe(runtime: SessionRuntime) -> Dict[str, Any]:
  s = runtime.session
  return {
    "profile": s.profile.to_dict(),
    "config": s.config.to_dict(),
    "performance_mode": performance_mode(s.profile),
  }


@app.get("/health")
def health() -> Dict[str, Any]:
  profile = DeviceProfiler(HostCapabilities(_REG.settings["device"])).profile()
  return {
    "status": "ok",
    "sessions": len(_REG),
    "segmentation_service": bool(_REG.settings["segmentation"].get("url")),
    "profile": profile.to_dict(),
    "config": resolve_processing_config(profile).to_dict(),
  }


@app.post("/sessions")
def sessions_create(req: Optional[CreateSessionRequest] = None) -> Dict[str, Any]:
  req = req or CreateSessionRequest()
  device = None
  if req.device is not None:
    device = {k: getattr(req.device, k) for k in DEVICE_KEYS}
  try:
    session_id = _REG.create(quality_intent=req.quality_intent, device=device)
  except TextBehindError as e:
    raise _http_error(e, "config") from e
  out = {"id": session_id}
  out.update(_describe(_REG.get(session_id)))
  return out


def _load_and_segment(runtime: SessionRuntime, data: bytes) -> Dict[str, Any]:
  with runtime.lock:
    s = runtime.session
    try:
      width, height = s.load_image(data)
    except TextBehindError as e:
      raise _http_error(e, "upload") from e
    result = s.segment()
  out: Dict[str, Any] = {"width": width, "height": height}
  if result is None:
    out["state"] = "discarded"
  else:
    out["state"] = result.state.value
    out["used_fallback"] = result.used_fallback
    out["elapsed_ms"] = int(result.elapsed_s * 1000)
  return out


@app.post("/sessions/{session_id}/image")
async def sessions_image(session_id: str, request: Request) -> Dict[str, Any]:
  runtime = _runtime(session_id)
  data = await request.body()
  if not data:
    raise HTTPException(status_code=400, detail={"error": "empty_body", "user_message": "No image was uploaded."})
  return await run_in_threadpool(_load_and_segment, runtime, data)


@app.post("/sessions/{session_id}/render")
def sessions_render(session_id: str, req: RenderRequest) -> Response:
  runtime = _runtime(session_id)
  transform = req.transform.to_transform() if req.transform is not None else None
  with runtime.lock:
    try:
      if req.container_width and req.container_height:
        result = runtime.session.compose(req.style.to_style())
        image = render_preview(result, req.container_width, req.container_height, transform)
      else:
        image = runtime.session.compose(req.style.to_style(), transform).image
    except TextBehindError as e:
      raise _http_error(e, "render") from e
    except ValueError as e:
      raise _http_error(ValidationError([str(e)], context="render"), "render") from e

  # Preview goes through the same serializer as exports.
  blob = export_composite(CompositeResult(image=image, width=image.width, height=image.height), "png")
  return Response(content=blob.data, media_type=blob.mime, headers={"X-Image-Size": f"{blob.width}x{blob.height}"})


@app.post("/sessions/{session_id}/export")
def sessions_export(session_id: str, req: ExportRequest) -> Response:
  runtime = _runtime(session_id)
  with runtime.lock:
    try:
      blob, filename = runtime.session.export(req.style.to_style(), req.format, req.quality)
    except TextBehindError as e:
      raise _http_error(e, "export") from e
  return Response(
    content=blob.data,
    media_type=blob.mime,
    headers={"Content-Disposition": f'attachment; filename="{filename}"'},
  )


@app.delete("/sessions/{session_id}")
def sessions_delete(session_id: str) -> Dict[str, Any]:
  if not _REG.remove(session_id):
    raise HTTPException(status_code=404, detail={"error": "session_not_found", "user_message": "Session not found."})
  return {"status": "closed"}

