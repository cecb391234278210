from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


LOGGER_NAME = "textbehind"


def setup_logger(debug_dir: Optional[Union[str, Path]] = None) -> logging.Logger:
  """Setup logging with optional file output."""
  logger = logging.getLogger(LOGGER_NAME)
  logger.setLevel(logging.DEBUG)

  logger.handlers.clear()

  console_handler = logging.StreamHandler()
  console_handler.setLevel(logging.INFO)
  console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
  logger.addHandler(console_handler)

  if debug_dir:
    debug_dir = Path(debug_dir)
    debug_dir.mkdir(parents=True, exist_ok=True)
    log_file = debug_dir / f"textbehind_debug_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(file_handler)

  return logger


def get_logger(area: str) -> logging.Logger:
  return logging.getLogger(f"{LOGGER_NAME}.{area}")
