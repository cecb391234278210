from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

from PIL import Image

from textbehind.errors import RenderContextUnavailableError, ValidationError
from textbehind.logs import get_logger


log = get_logger("compositor")

Affine = Tuple[float, float, float, float, float, float]
IDENTITY: Affine = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


class LayerKind(IntEnum):
  # Value is the z-order; drawing back to front puts the text behind the subject.
  BACKGROUND = 0
  TEXT = 1
  FOREGROUND = 2


@dataclass
class Layer:
  kind: LayerKind
  surface: Image.Image

  @property
  def z_order(self) -> int:
    return int(self.kind)


@dataclass(frozen=True)
class FitResult:
  width: float
  height: float
  scale: float

  def size(self) -> Tuple[int, int]:
    return max(1, int(round(self.width))), max(1, int(round(self.height)))


def fit_to_container(img_w: float, img_h: float, box_w: float, box_h: float) -> FitResult:
  """
  Aspect-fit an image into a container box.

  Wider-than-box images are clamped to the box width, everything else to the
  box height.
  """
  if img_w <= 0 or img_h <= 0 or box_w <= 0 or box_h <= 0:
    raise ValueError(f"fit needs positive sizes, got image {img_w}x{img_h} box {box_w}x{box_h}")
  image_aspect = img_w / float(img_h)
  box_aspect = box_w / float(box_h)
  if image_aspect > box_aspect:
    return FitResult(width=float(box_w), height=box_w / image_aspect, scale=box_w / float(img_w))
  return FitResult(width=box_h * image_aspect, height=float(box_h), scale=box_h / float(img_h))


@dataclass(frozen=True)
class ViewTransform:
  zoom_pct: float = 100.0
  pan_x: float = 0.0
  pan_y: float = 0.0

  def validate(self) -> "ViewTransform":
    problems = []
    if not isinstance(self.zoom_pct, (int, float)) or self.zoom_pct < 1:
      problems.append(f"zoom_pct must be >= 1, got {self.zoom_pct!r}")
    for name in ("pan_x", "pan_y"):
      v = getattr(self, name)
      if not isinstance(v, (int, float)) or v != v:
        problems.append(f"{name} must be a number, got {v!r}")
    if problems:
      raise ValidationError(problems)
    return self

  @property
  def is_identity(self) -> bool:
    return self.zoom_pct == 100 and self.pan_x == 0 and self.pan_y == 0


def transform_ops(transform: ViewTransform, width: float, height: float) -> List[Tuple[str, float, float]]:
  """
  Ordered canvas operations: zoom about the center, then pan.

  The pan is folded into the translate back to the origin, so it is applied
  in zoomed units.
  """
  transform.validate()
  cx, cy = width / 2.0, height / 2.0
  s = transform.zoom_pct / 100.0
  return [
    ("translate", cx, cy),
    ("scale", s, s),
    ("translate", -cx + transform.pan_x, -cy + transform.pan_y),
  ]


def _multiply(m: Affine, n: Affine) -> Affine:
  a, b, c, d, e, f = m
  g, h, i, j, k, l = n
  return (
    a * g + b * j,
    a * h + b * k,
    a * i + b * l + c,
    d * g + e * j,
    d * h + e * k,
    d * i + e * l + f,
  )


def transform_matrix(transform: ViewTransform, width: float, height: float) -> Affine:
  """Compose transform_ops into one forward 2x3 affine (x' = a*x + b*y + c, y' = d*x + e*y + f)."""
  m = IDENTITY
  for op, x, y in transform_ops(transform, width, height):
    if op == "translate":
      step: Affine = (1.0, 0.0, x, 0.0, 1.0, y)
    else:
      step = (x, 0.0, 0.0, 0.0, y, 0.0)
    m = _multiply(m, step)
  return m


def _invert(m: Affine) -> Affine:
  a, b, c, d, e, f = m
  det = a * e - b * d
  if det == 0:
    raise ValidationError(["view transform is not invertible"])
  ia, ib, id_, ie = e / det, -b / det, -d / det, a / det
  return (ia, ib, -(ia * c + ib * f), id_, ie, -(id_ * c + ie * f))


def apply_view_transform(image: Image.Image, transform: Optional[ViewTransform]) -> Image.Image:
  if transform is None or transform.validate().is_identity:
    return image.copy()
  forward = transform_matrix(transform, image.width, image.height)
  # PIL maps output pixels back to input pixels, so it wants the inverse.
  return image.transform(image.size, Image.AFFINE, _invert(forward), resample=Image.BILINEAR)


@dataclass(frozen=True)
class CompositeResult:
  image: Image.Image
  width: int
  height: int


def _check_layers(layers: Sequence[Layer]) -> List[Layer]:
  kinds = [layer.kind for layer in layers]
  missing = [k.name.lower() for k in LayerKind if k not in kinds]
  if missing:
    raise RenderContextUnavailableError(f"render context incomplete: missing {', '.join(missing)} layer(s)")
  if len(kinds) != len(set(kinds)):
    raise RenderContextUnavailableError("render context has duplicate layers")

  ordered = sorted(layers, key=lambda layer: layer.z_order)
  size = ordered[0].surface.size
  for layer in ordered:
    if layer.surface is None:
      raise RenderContextUnavailableError(f"{layer.kind.name.lower()} layer has no surface")
    if layer.surface.size != size:
      raise RenderContextUnavailableError(
        f"layer sizes disagree: {layer.kind.name.lower()} is {layer.surface.width}x{layer.surface.height}, "
        f"expected {size[0]}x{size[1]}"
      )
  return ordered


def composite(layers: Sequence[Layer], transform: Optional[ViewTransform] = None) -> CompositeResult:
  """
  Merge background, text and foreground back to front onto a zeroed canvas,
  then apply the view transform about the canvas center.

  A pure function of its inputs: identical layers and transform give a
  byte-identical raster.
  """
  ordered = _check_layers(layers)
  width, height = ordered[0].surface.size

  canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
  for layer in ordered:
    src = layer.surface if layer.surface.mode == "RGBA" else layer.surface.convert("RGBA")
    canvas.alpha_composite(src)

  out = apply_view_transform(canvas, transform)
  log.debug("composited %d layers at %sx%s", len(ordered), width, height)
  return CompositeResult(image=out, width=width, height=height)


def render_preview(
  result: CompositeResult,
  container_w: int,
  container_h: int,
  transform: Optional[ViewTransform] = None,
) -> Image.Image:
  """On-screen preview: aspect-fit into the container, then zoom/pan about the fitted center."""
  fit = fit_to_container(result.width, result.height, container_w, container_h)
  size = fit.size()
  fitted = result.image if size == result.image.size else result.image.resize(size, resample=Image.LANCZOS)
  return apply_view_transform(fitted, transform)
