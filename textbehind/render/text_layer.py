from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from textbehind.errors import RenderContextUnavailableError, ValidationError
from textbehind.logs import get_logger


log = get_logger("text")

PASSES = 3
PASS_FADE = 0.2
PASS_OFFSET = 0.5
GLOW_FACTOR = 3.0
UNDERLINE_DROP = 0.2
ITALIC_SHEAR = 0.2

_HEX_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")

_FALLBACK_FONTS = [
  "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
  "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
  "/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf",
]
_FALLBACK_BOLD = [
  "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
  "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
]
_FALLBACK_ITALIC = [
  "/usr/share/fonts/truetype/dejavu/DejaVuSans-Oblique.ttf",
  "/usr/share/fonts/truetype/liberation/LiberationSans-Italic.ttf",
]
_FALLBACK_BOLD_ITALIC = [
  "/usr/share/fonts/truetype/dejavu/DejaVuSans-BoldOblique.ttf",
  "/usr/share/fonts/truetype/liberation/LiberationSans-BoldItalic.ttf",
]


def _fmt_num(v: float) -> str:
  f = float(v)
  return str(int(f)) if f.is_integer() else str(f)


def parse_hex_color(color: str) -> Tuple[int, int, int]:
  s = color.strip().lstrip("#")
  if len(s) == 3:
    s = "".join(c * 2 for c in s)
  return int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16)


@dataclass(frozen=True)
class TextStyle:
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

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "TextStyle":
    pos = data.get("position") or data.get("posPct") or {}
    return cls(
      content=data.get("content", data.get("text", "")),
      font_size=data.get("font_size", data.get("fontSize", 48.0)),
      font_family=data.get("font_family", data.get("fontFamily", "Arial")),
      color=data.get("color", "#ffffff"),
      opacity_pct=data.get("opacity_pct", data.get("opacity", 100.0)),
      pos_x_pct=data.get("pos_x_pct", pos.get("x", 50.0)),
      pos_y_pct=data.get("pos_y_pct", pos.get("y", 50.0)),
      blur=data.get("blur", 0.0),
      bold=data.get("bold", False),
      italic=data.get("italic", False),
      underline=data.get("underline", False),
    )

  def problems(self) -> List[str]:
    out: List[str] = []
    if not isinstance(self.content, str) or not self.content.strip():
      out.append("content must not be empty")
    if not _is_number(self.font_size) or self.font_size <= 0:
      out.append(f"font_size must be > 0, got {self.font_size!r}")
    if not isinstance(self.font_family, str) or not self.font_family.strip():
      out.append("font_family must not be empty")
    if not isinstance(self.color, str) or not _HEX_RE.match(self.color.strip()):
      out.append(f"color must be #RGB or #RRGGBB, got {self.color!r}")
    for name in ("opacity_pct", "pos_x_pct", "pos_y_pct"):
      v = getattr(self, name)
      if not _is_number(v) or not (0 <= v <= 100):
        out.append(f"{name} must be within 0..100, got {v!r}")
    if not _is_number(self.blur) or self.blur < 0:
      out.append(f"blur must be >= 0, got {self.blur!r}")
    for name in ("bold", "italic", "underline"):
      v = getattr(self, name)
      if not isinstance(v, bool):
        out.append(f"{name} must be true or false, got {v!r}")
    return out

  def validate(self) -> "TextStyle":
    problems = self.problems()
    if problems:
      raise ValidationError(problems)
    return self


def _is_number(v: Any) -> bool:
  return isinstance(v, (int, float)) and not isinstance(v, bool) and v == v


def font_descriptor(style: TextStyle) -> str:
  prefix = ""
  if style.italic:
    prefix += "italic "
  if style.bold:
    prefix += "bold "
  return f"{prefix}{_fmt_num(style.font_size)}px {style.font_family}"


def text_position(style: TextStyle, width: int, height: int) -> Tuple[float, float]:
  return (style.pos_x_pct / 100.0) * width, (style.pos_y_pct / 100.0) * height


@dataclass(frozen=True)
class TextPass:
  index: int
  opacity: float
  glow_radius: float
  x: float
  y: float
  underline: bool


@dataclass(frozen=True)
class TextRenderPlan:
  descriptor: str
  anchor: Tuple[float, float]
  passes: List[TextPass] = field(default_factory=list)


def plan_text(style: TextStyle, width: int, height: int) -> TextRenderPlan:
  style.validate()
  x, y = text_position(style, width, height)
  passes = []
  for i in range(PASSES):
    passes.append(
      TextPass(
        index=i,
        opacity=(style.opacity_pct / 100.0) * (1.0 - i * PASS_FADE),
        glow_radius=(style.blur + i) * GLOW_FACTOR,
        x=x + i * PASS_OFFSET,
        y=y + i * PASS_OFFSET,
        underline=bool(style.underline and i == 0),
      )
    )
  return TextRenderPlan(descriptor=font_descriptor(style), anchor=(x, y), passes=passes)


def _fc_match_file(pattern: str) -> Optional[str]:
  try:
    res = subprocess.run(
      ["fc-match", "-f", "%{file}\n", str(pattern)],
      capture_output=True,
      text=True,
      check=False,
    )
  except Exception:
    return None
  out = (res.stdout or "").strip().splitlines()
  if not out:
    return None
  path = out[0].strip()
  if path and Path(path).exists():
    return path
  return None


def _first_existing(paths: List[str]) -> Optional[str]:
  for p in paths:
    if Path(p).exists():
      return p
  return None


@lru_cache(maxsize=64)
def resolve_font_path(family: str, bold: bool, italic: bool) -> Tuple[Optional[str], bool, bool]:
  """
  Returns (path, has_bold, has_italic). has_* tell whether the face itself
  carries the style; otherwise the renderer synthesizes it.
  """
  if family and Path(family).suffix.lower() in (".ttf", ".otf", ".ttc") and Path(family).exists():
    return family, False, False

  styles = []
  if bold:
    styles.append("Bold")
  if italic:
    styles.append("Italic")
  pattern = f"{family}:style={' '.join(styles)}" if styles else family
  path = _fc_match_file(pattern)
  if path:
    name = Path(path).stem.lower()
    has_bold = "bold" in name or "black" in name or "heavy" in name
    has_italic = "italic" in name or "oblique" in name
    return path, has_bold, has_italic

  if bold and italic:
    path = _first_existing(_FALLBACK_BOLD_ITALIC)
    if path:
      return path, True, True
  elif bold:
    path = _first_existing(_FALLBACK_BOLD)
    if path:
      return path, True, False
  elif italic:
    path = _first_existing(_FALLBACK_ITALIC)
    if path:
      return path, False, True
  return _first_existing(_FALLBACK_FONTS), False, False


def load_font(style: TextStyle) -> Tuple[ImageFont.ImageFont, bool, bool]:
  size = max(1, int(round(style.font_size)))
  path, has_bold, has_italic = resolve_font_path(style.font_family, style.bold, style.italic)
  if path:
    try:
      return ImageFont.truetype(path, size), has_bold, has_italic
    except OSError as e:
      log.warning("font %s could not be loaded (%s); using default", path, e)
  try:
    return ImageFont.load_default(size=size), False, False
  except TypeError:
    # Pillow < 10.1 has no sized default font.
    return ImageFont.load_default(), False, False


def _text_width(text: str, font: ImageFont.ImageFont) -> float:
  if hasattr(font, "getlength"):
    try:
      return float(font.getlength(text))
    except Exception:
      pass
  try:
    x1, y1, x2, y2 = font.getbbox(text)
    return float(x2 - x1)
  except Exception:
    return float(len(text)) * float(getattr(font, "size", 16))


def _glyph_mask(
  size: Tuple[int, int],
  text: str,
  font: ImageFont.ImageFont,
  center: Tuple[float, float],
  stroke: int,
  shear: float,
) -> Image.Image:
  mask = Image.new("L", size, 0)
  draw = ImageDraw.Draw(mask)
  left, top, right, bottom = draw.textbbox((0, 0), text, font=font, stroke_width=stroke)
  origin = (center[0] - (left + right) / 2.0, center[1] - (top + bottom) / 2.0)
  draw.text(origin, text, fill=255, font=font, stroke_width=stroke, stroke_fill=255)
  if shear:
    # Slant about the baseline row through the anchor.
    mask = mask.transform(size, Image.AFFINE, (1.0, shear, -shear * center[1], 0.0, 1.0, 0.0), resample=Image.BILINEAR)
  return mask


def _colored(mask: Image.Image, rgb: Tuple[int, int, int], opacity: float) -> Image.Image:
  layer = Image.new("RGBA", mask.size, rgb + (0,))
  alpha = mask.point(lambda v: int(round(v * opacity)))
  layer.putalpha(alpha)
  return layer


def render_text_layer(
  style: TextStyle,
  width: int,
  height: int,
  surface: Optional[Image.Image] = None,
) -> Image.Image:
  """
  Draw `style` onto a transparent RGBA surface of width x height.

  Three passes build the depth effect: each one fainter, more blurred and
  nudged half a pixel down-right. The style is validated before any drawing.
  """
  plan = plan_text(style, width, height)

  if surface is None:
    surface = Image.new("RGBA", (int(width), int(height)), (0, 0, 0, 0))
  elif surface.mode != "RGBA" or surface.size != (int(width), int(height)):
    raise RenderContextUnavailableError(
      f"text surface is {surface.mode} {surface.width}x{surface.height}, need RGBA {width}x{height}"
    )

  font, has_bold, has_italic = load_font(style)
  rgb = parse_hex_color(style.color)
  size = surface.size
  stroke = max(1, int(round(style.font_size / 30.0))) if (style.bold and not has_bold) else 0
  shear = ITALIC_SHEAR if (style.italic and not has_italic) else 0.0
  text_w = _text_width(style.content, font)

  for p in plan.passes:
    if p.opacity <= 0:
      continue
    glyphs = _glyph_mask(size, style.content, font, (p.x, p.y), stroke, shear)

    if style.blur > 0 and p.glow_radius > 0:
      glow = glyphs.filter(ImageFilter.GaussianBlur(radius=p.glow_radius / 2.0))
      surface.alpha_composite(_colored(glow, rgb, p.opacity))

    fill = glyphs
    if p.underline:
      fill = glyphs.copy()
      line_y = plan.anchor[1] + style.font_size * UNDERLINE_DROP
      line_w = max(1, int(round(style.font_size / 20.0)))
      ImageDraw.Draw(fill).line(
        [(plan.anchor[0] - text_w / 2.0, line_y), (plan.anchor[0] + text_w / 2.0, line_y)],
        fill=255,
        width=line_w,
      )
    surface.alpha_composite(_colored(fill, rgb, p.opacity))

  log.debug("rendered text '%s' (%s) at %.1f,%.1f", style.content[:20], plan.descriptor, plan.anchor[0], plan.anchor[1])
  return surface
