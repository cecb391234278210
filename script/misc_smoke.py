from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from unittest import mock

from PIL import Image

from smokeutil import png_bytes, run_tests, subject_image
from textbehind import cli
from textbehind.errors import (
  ErrorKind,
  ResourceExhaustionError,
  TextBehindError,
  ValidationError,
  classify_error,
  recovery_suggestions,
  to_user_error,
)
from textbehind.logs import get_logger, setup_logger
from textbehind.settings import load_settings


# --- errors ---


def test_classify_error():
  assert classify_error(MemoryError()) == ErrorKind.MEMORY
  assert classify_error(RuntimeError("Failed to fetch")) == ErrorKind.NETWORK
  assert classify_error(OSError("cannot identify image file <_io.BytesIO>")) == ErrorKind.INVALID_FORMAT
  assert classify_error(RuntimeError("something odd")) == ErrorKind.UNKNOWN
  assert classify_error(ValidationError(["x"])) == ErrorKind.VALIDATION


def test_to_user_error_wraps_and_keeps_cause():
  cause = RuntimeError("Failed to fetch")
  err = to_user_error(cause, "segmentation")
  assert isinstance(err, TextBehindError)
  assert err.kind == ErrorKind.NETWORK
  assert err.context == "segmentation"
  assert err.__cause__ is cause
  assert err.retryable
  assert "connection" in err.user_message.lower()

  mem = to_user_error(MemoryError(), "upload")
  assert isinstance(mem, ResourceExhaustionError)
  assert not mem.retryable


def test_domain_error_passes_through():
  err = ValidationError(["font_size must be > 0"], context="")
  assert to_user_error(err, "render") is err
  assert err.context == "render"
  body = err.to_dict()
  assert body["error"] == "validation"
  assert body["problems"] == ["font_size must be > 0"]


def test_recovery_suggestions():
  assert recovery_suggestions(ErrorKind.MEMORY)
  assert recovery_suggestions(ErrorKind.UNKNOWN) == []


# --- settings ---


def test_load_settings_from_yaml_and_env():
  with tempfile.TemporaryDirectory() as tmp:
    path = Path(tmp) / "config.yaml"
    path.write_text(
      "segmentation:\n  url: http://seg.local\n  timeout_s: 12\ndevice:\n  screen: 800x600\n  cpu_count: 2\n",
      encoding="utf-8",
    )
    with mock.patch.dict("os.environ", {"TEXTBEHIND_SEGMENT_TIMEOUT": "", "TEXTBEHIND_CPU_COUNT": ""}):
      s = load_settings(path)
    assert s["segmentation"]["url"] == "http://seg.local"
    assert s["segmentation"]["timeout_s"] == 12.0
    assert s["segmentation"]["mobile_timeout_s"] == 22.5
    assert s["device"]["screen"] == "800x600"
    assert s["device"]["cpu_count"] == 2

    with mock.patch.dict("os.environ", {"TEXTBEHIND_SEGMENT_TIMEOUT": "5", "TEXTBEHIND_MOBILE": "yes"}):
      s = load_settings(path)
    assert s["segmentation"]["timeout_s"] == 5.0
    assert s["device"]["is_mobile"] is True


def test_load_settings_missing_file_uses_defaults():
  with tempfile.TemporaryDirectory() as tmp:
    with mock.patch.dict("os.environ", {"TEXTBEHIND_SEGMENT_URL": "", "TEXTBEHIND_SEGMENT_TIMEOUT": ""}):
      s = load_settings(Path(tmp) / "absent.yaml")
  assert s["segmentation"]["url"] is None
  assert s["segmentation"]["timeout_s"] == 30.0
  assert s["export"] == {"format": "png", "quality": 1.0}


# --- logging ---


def test_setup_logger_writes_debug_file():
  with tempfile.TemporaryDirectory() as tmp:
    logger = setup_logger(tmp)
    get_logger("smoke").debug("hello from smoke")
    for h in logger.handlers:
      h.flush()
    files = list(Path(tmp).glob("textbehind_debug_*.log"))
    assert len(files) == 1
    assert "hello from smoke" in files[0].read_text(encoding="utf-8")
    for h in list(logger.handlers):
      if isinstance(h, logging.FileHandler):
        h.close()
        logger.removeHandler(h)


# --- cli ---


def test_cli_renders_file():
  with tempfile.TemporaryDirectory() as tmp:
    src = Path(tmp) / "in.png"
    src.write_bytes(png_bytes(subject_image((160, 100))))
    out = Path(tmp) / "out.png"
    with mock.patch.dict("os.environ", {"TEXTBEHIND_SEGMENT_URL": ""}):
      code = cli.main([str(src), "--text", "HELLO", "--out", str(out), "--font-size", "24"])
    assert code == 0
    assert Image.open(out).size == (160, 100)


def test_cli_error_codes():
  with tempfile.TemporaryDirectory() as tmp:
    assert cli.main([str(Path(tmp) / "missing.png"), "--text", "x"]) == 2
    src = Path(tmp) / "in.png"
    src.write_bytes(png_bytes(subject_image((40, 40))))
    with mock.patch.dict("os.environ", {"TEXTBEHIND_SEGMENT_URL": ""}):
      assert cli.main([str(src), "--text", "x", "--opacity", "150", "--out", str(Path(tmp) / "o.png")]) == 1


def test_cli_rejects_bad_style_before_loading():
  with tempfile.TemporaryDirectory() as tmp:
    src = Path(tmp) / "in.png"
    src.write_bytes(png_bytes(subject_image((40, 40))))
    with mock.patch.object(cli, "EditingSession") as session_cls:
      assert cli.main([str(src), "--text", "x", "--blur", "-1"]) == 1
      # Validation wins over the unreadable input path.
      assert cli.main([str(Path(tmp) / "missing.png"), "--text", "", "--font-size", "0"]) == 1
    session_cls.assert_not_called()


def main() -> int:
  return run_tests(globals(), "misc_smoke")


if __name__ == "__main__":
  raise SystemExit(main())
