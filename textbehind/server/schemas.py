from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from textbehind.render.compositor import ViewTransform
from textbehind.render.text_layer import TextStyle


class DeviceOverrides(BaseModel):
  screen: Optional[str] = Field(None, description="Screen size as WxH in CSS pixels, e.g. 390x844.")
  pixel_ratio: Optional[float] = None
  cpu_count: Optional[int] = None
  memory_mb: Optional[int] = None
  max_surface_dim: Optional[int] = None
  is_mobile: Optional[bool] = None
  battery_pct: Optional[int] = None
  is_charging: Optional[bool] = None


class CreateSessionRequest(BaseModel):
  quality_intent: Optional[float] = Field(None, description="Caller quality preference in (0, 1]; replaces the tier quality only.")
  device: Optional[DeviceOverrides] = None


# Ranges are checked by TextStyle.validate so that every problem is reported at once.
class TextStyleRequest(BaseModel):
  content: str
  font_size: float = 48.0
  font_family: str = "Arial"
  color: str = "#ffffff"
  opacity_pct: float = 100.0
  pos_x_pct: float = 50.0
  pos_y_pct: float = 50.0
  blur: float = 0.0
  bold: bool = False
  italic: bool = False
  underline: bool = False

  def to_style(self) -> TextStyle:
    return TextStyle(
      content=self.content,
      font_size=self.font_size,
      font_family=self.font_family,
      color=self.color,
      opacity_pct=self.opacity_pct,
      pos_x_pct=self.pos_x_pct,
      pos_y_pct=self.pos_y_pct,
      blur=self.blur,
      bold=self.bold,
      italic=self.italic,
      underline=self.underline,
    )


class ViewTransformRequest(BaseModel):
  zoom_pct: float = 100.0
  pan_x: float = 0.0
  pan_y: float = 0.0

  def to_transform(self) -> ViewTransform:
    return ViewTransform(zoom_pct=self.zoom_pct, pan_x=self.pan_x, pan_y=self.pan_y)


class RenderRequest(BaseModel):
  style: TextStyleRequest
  transform: Optional[ViewTransformRequest] = None
  container_width: Optional[int] = Field(None, description="Preview box width; omit to get the native composite.")
  container_height: Optional[int] = None


class ExportRequest(BaseModel):
  style: TextStyleRequest
  format: Optional[str] = Field(None, description="png, jpeg or webp; defaults to the configured export format.")
  quality: Optional[float] = Field(None, description="Lossy quality in (0, 1].")
