from __future__ import annotations

import io
from datetime import datetime
from unittest import mock

import numpy as np
import pytest
from PIL import Image, ImageDraw

from smokeutil import run_tests
from textbehind.errors import RenderContextUnavailableError, TextBehindError, ValidationError
from textbehind.export.pipeline import export_composite, export_filename
from textbehind.render.compositor import (
  CompositeResult,
  Layer,
  LayerKind,
  ViewTransform,
  composite,
  fit_to_container,
  render_preview,
  transform_matrix,
  transform_ops,
)
from textbehind.render.text_layer import TextStyle, font_descriptor, plan_text, render_text_layer, text_position


def _layers(size=(80, 60)):
  w, h = size
  bg = Image.new("RGBA", size, (200, 0, 0, 255))
  text = Image.new("RGBA", size, (0, 0, 0, 0))
  ImageDraw.Draw(text).rectangle((w // 4, h // 4, 3 * w // 4, 3 * h // 4), fill=(0, 200, 0, 255))
  fg = Image.new("RGBA", size, (0, 0, 0, 0))
  ImageDraw.Draw(fg).rectangle((0, 0, w // 2 - 1, h - 1), fill=(0, 0, 200, 255))
  return [Layer(LayerKind.FOREGROUND, fg), Layer(LayerKind.BACKGROUND, bg), Layer(LayerKind.TEXT, text)]


def _alpha_sum(img):
  return int(np.asarray(img.getchannel("A"), dtype=np.int64).sum())


# --- text layer ---


def test_font_descriptor_order():
  style = TextStyle(content="Hi", italic=True, bold=True, font_size=20, font_family="Arial")
  assert font_descriptor(style) == "italic bold 20px Arial"
  assert font_descriptor(TextStyle(content="Hi", font_size=12.5, font_family="Inter")) == "12.5px Inter"


def test_text_position():
  style = TextStyle(content="Hi", pos_x_pct=25, pos_y_pct=75)
  assert text_position(style, 400, 300) == (100, 225)


def test_invalid_style_rejected_before_drawing():
  style = TextStyle(content="", font_size=0, opacity_pct=-1, pos_x_pct=-10, pos_y_pct=110, blur=-1)
  surface = Image.new("RGBA", (50, 50), (0, 0, 0, 0))
  with mock.patch("textbehind.render.text_layer.ImageDraw.Draw") as draw:
    with pytest.raises(ValidationError) as info:
      render_text_layer(style, 50, 50, surface=surface)
  assert not draw.called
  assert len(info.value.problems) == 6
  assert surface.getextrema()[3] == (0, 0)


def test_color_must_be_hex():
  assert TextStyle(content="x", color="#abc").problems() == []
  assert TextStyle(content="x", color="#A1B2C3").problems() == []
  for bad in ("red", "#abcd", "123456", "#ggg"):
    with pytest.raises(ValidationError):
      TextStyle(content="x", color=bad).validate()


def test_three_pass_plan():
  plan = plan_text(TextStyle(content="Hi", opacity_pct=80, blur=2, underline=True, pos_x_pct=50, pos_y_pct=50), 200, 100)
  assert plan.descriptor == "48px Arial"
  assert len(plan.passes) == 3
  assert [p.opacity for p in plan.passes] == pytest.approx([0.8, 0.64, 0.48])
  assert [p.glow_radius for p in plan.passes] == [6, 9, 12]
  assert [(p.x, p.y) for p in plan.passes] == [(100, 50), (100.5, 50.5), (101, 51)]
  assert [p.underline for p in plan.passes] == [True, False, False]


def test_render_draws_text_near_anchor():
  out = render_text_layer(TextStyle(content="HELLO", font_size=32, color="#ff0000"), 200, 100)
  assert out.size == (200, 100)
  assert out.mode == "RGBA"
  bbox = out.getchannel("A").getbbox()
  assert bbox is not None
  left, top, right, bottom = bbox
  assert left < 100 < right
  assert top < 50 < bottom
  arr = np.asarray(out)
  visible = arr[..., 3] > 0
  assert (arr[visible][:, 1:3] == 0).all()


def test_render_is_deterministic():
  style = TextStyle(content="Same", font_size=24, blur=1.5, bold=True, italic=True, underline=True)
  a = render_text_layer(style, 160, 90)
  b = render_text_layer(style, 160, 90)
  assert a.tobytes() == b.tobytes()


def test_underline_and_blur_add_coverage():
  base = TextStyle(content="Line", font_size=30)
  plain = _alpha_sum(render_text_layer(base, 200, 100))
  underlined = _alpha_sum(render_text_layer(TextStyle(content="Line", font_size=30, underline=True), 200, 100))
  glowing = _alpha_sum(render_text_layer(TextStyle(content="Line", font_size=30, blur=2), 200, 100))
  assert underlined > plain
  assert glowing > plain


def test_zero_opacity_draws_nothing():
  out = render_text_layer(TextStyle(content="ghost", opacity_pct=0), 100, 50)
  assert out.getchannel("A").getbbox() is None


def test_render_rejects_mismatched_surface():
  with pytest.raises(RenderContextUnavailableError):
    render_text_layer(TextStyle(content="x"), 100, 100, surface=Image.new("RGB", (100, 100)))
  with pytest.raises(RenderContextUnavailableError):
    render_text_layer(TextStyle(content="x"), 100, 100, surface=Image.new("RGBA", (10, 10)))


def test_style_from_dict_accepts_camel_case():
  style = TextStyle.from_dict({"text": "Yo", "fontSize": 20, "fontFamily": "Inter", "opacity": 50, "position": {"x": 10, "y": 90}})
  assert (style.content, style.font_size, style.font_family, style.opacity_pct) == ("Yo", 20, "Inter", 50)
  assert (style.pos_x_pct, style.pos_y_pct) == (10, 90)
  assert (style.bold, style.italic, style.underline) == (False, False, False)


def test_style_flags_must_be_booleans():
  style = TextStyle.from_dict({"content": "Yo", "bold": "false", "italic": 1, "underline": True})
  assert style.bold == "false"
  problems = style.problems()
  assert problems == [
    "bold must be true or false, got 'false'",
    "italic must be true or false, got 1",
  ]
  with pytest.raises(ValidationError):
    style.validate()
  assert TextStyle.from_dict({"content": "Yo", "bold": True}).problems() == []


# --- compositor ---


def test_fit_to_container_examples():
  fit = fit_to_container(800, 600, 400, 300)
  assert (fit.width, fit.height, fit.scale) == pytest.approx((400, 300, 0.5))
  fit = fit_to_container(600, 800, 400, 300)
  assert (fit.width, fit.height, fit.scale) == pytest.approx((225, 300, 0.375))
  fit = fit_to_container(500, 500, 400, 300)
  assert (fit.width, fit.height) == pytest.approx((300, 300))
  fit = fit_to_container(1000, 200, 400, 300)
  assert (fit.width, fit.height, fit.scale) == pytest.approx((400, 80, 0.4))
  with pytest.raises(ValueError):
    fit_to_container(0, 10, 10, 10)


def test_zoom_ops_order():
  ops = transform_ops(ViewTransform(zoom_pct=150), 400, 300)
  assert ops == [("translate", 200, 150), ("scale", 1.5, 1.5), ("translate", -200, -150)]


def test_pan_folds_into_translate_back():
  ops = transform_ops(ViewTransform(zoom_pct=100, pan_x=50, pan_y=-30), 400, 300)
  assert ops[-1] == ("translate", -150, -180)


def test_transform_matrix_zooms_about_center():
  m = transform_matrix(ViewTransform(zoom_pct=200), 100, 100)
  assert m == pytest.approx((2, 0, -50, 0, 2, -50))
  m = transform_matrix(ViewTransform(zoom_pct=200, pan_x=10), 100, 100)
  a, b, c, d, e, f = m
  # The center moves by the pan in zoomed units.
  assert a * 50 + c == pytest.approx(70)


def test_zoom_below_one_percent_rejected():
  with pytest.raises(ValidationError):
    transform_ops(ViewTransform(zoom_pct=0.5), 100, 100)


def test_composite_z_order_puts_text_behind_subject():
  result = composite(_layers())
  img = result.image
  assert (result.width, result.height) == (80, 60)
  assert img.getpixel((30, 30))[:3] == (0, 0, 200)
  assert img.getpixel((50, 30))[:3] == (0, 200, 0)
  assert img.getpixel((75, 5))[:3] == (200, 0, 0)


def test_composite_is_byte_identical():
  t = ViewTransform(zoom_pct=150, pan_x=7, pan_y=-3)
  a = composite(_layers(), t)
  b = composite(_layers(), t)
  assert a.image.tobytes() == b.image.tobytes()
  assert composite(_layers()).image.tobytes() == composite(_layers()).image.tobytes()


def test_composite_result_does_not_alias_layers():
  layers = _layers()
  result = composite(layers)
  before = result.image.tobytes()
  for layer in layers:
    layer.surface.paste((1, 2, 3, 255), (0, 0, layer.surface.width, layer.surface.height))
  assert result.image.tobytes() == before


def test_zoom_changes_raster_but_not_size():
  plain = composite(_layers())
  zoomed = composite(_layers(), ViewTransform(zoom_pct=300))
  assert zoomed.image.size == plain.image.size
  assert zoomed.image.tobytes() != plain.image.tobytes()
  # 3x about the center: the corner now shows what sat near the middle.
  assert zoomed.image.getpixel((0, 0))[:3] != (200, 0, 0)


def test_composite_requires_complete_matching_layers():
  layers = _layers()
  with pytest.raises(RenderContextUnavailableError):
    composite(layers[:2])
  odd = _layers()
  odd[0] = Layer(LayerKind.FOREGROUND, Image.new("RGBA", (10, 10)))
  with pytest.raises(RenderContextUnavailableError):
    composite(odd)
  with pytest.raises(RenderContextUnavailableError):
    composite(layers + [Layer(LayerKind.TEXT, Image.new("RGBA", (80, 60)))])


def test_render_preview_fits_container():
  result = CompositeResult(image=Image.new("RGBA", (800, 600)), width=800, height=600)
  assert render_preview(result, 400, 300).size == (400, 300)
  tall = CompositeResult(image=Image.new("RGBA", (600, 800)), width=600, height=800)
  assert render_preview(tall, 400, 300, ViewTransform(zoom_pct=120)).size == (225, 300)


# --- export ---


def _result(img):
  return CompositeResult(image=img, width=img.width, height=img.height)


def test_png_export_is_native_size():
  blob = export_composite(composite(_layers()), "png")
  assert blob.mime == "image/png" and blob.ext == "png"
  assert blob.data[:8] == b"\x89PNG\r\n\x1a\n"
  assert Image.open(io.BytesIO(blob.data)).size == (80, 60)
  assert (blob.width, blob.height) == (80, 60)


def test_jpeg_export_flattens_onto_white():
  blob = export_composite(_result(Image.new("RGBA", (20, 20), (0, 0, 0, 0))), "jpeg", 0.9)
  assert blob.mime == "image/jpeg" and blob.ext == "jpg"
  img = Image.open(io.BytesIO(blob.data))
  assert img.mode == "RGB"
  assert min(img.getpixel((10, 10))) >= 250


def test_lossy_quality_is_applied():
  rng = np.random.RandomState(7)
  noise = Image.fromarray(rng.randint(0, 256, size=(64, 64, 4), dtype=np.uint8), mode="RGBA")
  low = export_composite(_result(noise), "jpeg", 0.3)
  high = export_composite(_result(noise), "jpeg", 1.0)
  assert len(low.data) < len(high.data)
  webp = export_composite(_result(noise), "webp", 0.5)
  assert webp.mime == "image/webp"


def test_export_rejects_bad_format_and_quality():
  res = _result(Image.new("RGBA", (4, 4)))
  with pytest.raises(ValidationError):
    export_composite(res, "gif")
  with pytest.raises(ValidationError):
    export_composite(res, "jpeg", 0)
  with pytest.raises(ValidationError):
    export_composite(res, "jpeg", 1.2)


def test_serialization_failure_is_reported_as_export_error():
  res = _result(Image.new("RGBA", (4, 4)))
  with mock.patch.object(Image.Image, "save", side_effect=OSError("disk full")):
    with pytest.raises(TextBehindError) as info:
      export_composite(res, "png")
  assert info.value.context == "export"


def test_export_filename():
  now = datetime(2024, 1, 2, 3, 4, 5)
  assert export_filename("Hello World! 2024", "png", now=now) == "text-behind-image_Hello_World__2024_20240102_030405.png"
  assert export_filename("abcdefghijklmnopqrstuvwxyz", "jpg", now=now) == "text-behind-image_abcdefghijklmnopqrst_20240102_030405.jpg"
  assert export_filename("é&ü", ".webp", now=now) == "text-behind-image____20240102_030405.webp"


def main() -> int:
  return run_tests(globals(), "render_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
