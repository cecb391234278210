from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from textbehind.errors import TextBehindError, ValidationError
from textbehind.logs import setup_logger
from textbehind.render.text_layer import TextStyle
from textbehind.session import EditingSession
from textbehind.settings import load_settings


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(description="Place text behind the subject of a photo.")
  parser.add_argument("image", help="Input image (PNG/JPEG/WebP).")
  parser.add_argument("--text", required=True)
  parser.add_argument("--out", default=None, help="Output file; defaults to a generated name in the current directory.")
  parser.add_argument("--format", default=None, choices=["png", "jpeg", "webp"])
  parser.add_argument("--quality", type=float, default=None, help="Lossy quality in (0, 1].")
  parser.add_argument("--font-size", type=float, default=48.0)
  parser.add_argument("--font-family", default=os.environ.get("TEXTBEHIND_FONT", "Arial"))
  parser.add_argument("--color", default="#ffffff")
  parser.add_argument("--opacity", type=float, default=100.0)
  parser.add_argument("--x", type=float, default=50.0, help="Horizontal position in percent of the width.")
  parser.add_argument("--y", type=float, default=50.0, help="Vertical position in percent of the height.")
  parser.add_argument("--blur", type=float, default=0.0)
  parser.add_argument("--bold", action="store_true")
  parser.add_argument("--italic", action="store_true")
  parser.add_argument("--underline", action="store_true")
  parser.add_argument("--segment-url", default=None, help="Background removal service; without it the fallback mask is used.")
  parser.add_argument("--debug-dir", default=None)
  return parser


def _report(logger: logging.Logger, e: TextBehindError) -> None:
  logger.error("%s", e.user_message)
  for line in getattr(e, "problems", []):
    logger.error("  - %s", line)


def main(argv: Optional[List[str]] = None) -> int:
  args = build_parser().parse_args(argv)
  settings = load_settings()
  if args.segment_url:
    settings["segmentation"]["url"] = args.segment_url
  logger = setup_logger(args.debug_dir or settings["logging"]["debug_dir"])

  style = TextStyle(
    content=args.text,
    font_size=args.font_size,
    font_family=args.font_family,
    color=args.color,
    opacity_pct=args.opacity,
    pos_x_pct=args.x,
    pos_y_pct=args.y,
    blur=args.blur,
    bold=args.bold,
    italic=args.italic,
    underline=args.underline,
  )
  try:
    style.validate()
  except ValidationError as e:
    _report(logger, e)
    return 1

  def on_status(message: str, processing: bool) -> None:
    logger.info(message)

  try:
    data = Path(args.image).read_bytes()
  except OSError as e:
    logger.error("cannot read %s: %s", args.image, e)
    return 2

  try:
    with EditingSession(settings=settings, on_status=on_status) as session:
      session.load_image(data)
      result = session.segment()
      if result is not None and result.used_fallback:
        logger.warning("subject detection fell back to the simplified mask (%s)", result.reason)
      blob, filename = session.export(style, args.format, args.quality)
  except TextBehindError as e:
    _report(logger, e)
    return 1

  out = Path(args.out) if args.out else Path.cwd() / filename
  out.write_bytes(blob.data)
  logger.info("wrote %s (%sx%s)", out, blob.width, blob.height)
  return 0


if __name__ == "__main__":
  sys.exit(main())
