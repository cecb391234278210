from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple


class ErrorKind(str, Enum):
  VALIDATION = "validation"
  MEMORY = "memory"
  NETWORK = "network"
  INVALID_FORMAT = "invalid_format"
  RENDER_CONTEXT = "render_context"
  SEGMENTATION = "segmentation"
  UNKNOWN = "unknown"


USER_MESSAGES: Dict[ErrorKind, str] = {
  ErrorKind.VALIDATION: "Text settings are out of range. Please adjust them and try again.",
  ErrorKind.MEMORY: "Image is too large to process. Please try a smaller image.",
  ErrorKind.NETWORK: "Network error occurred. Please check your connection and try again.",
  ErrorKind.INVALID_FORMAT: "Unsupported image format. Please use PNG, JPG, or JPEG.",
  ErrorKind.RENDER_CONTEXT: "Image processing error. Please try again with a different image.",
  ErrorKind.SEGMENTATION: "Could not separate the subject. A simplified cut-out was used instead.",
  ErrorKind.UNKNOWN: "Could not process image. Please try another one.",
}

_RETRYABLE = {ErrorKind.NETWORK, ErrorKind.SEGMENTATION, ErrorKind.UNKNOWN}

_SUGGESTIONS: Dict[ErrorKind, List[str]] = {
  ErrorKind.MEMORY: [
    "Try a smaller image (recommended: under 2MB)",
    "Use an image with lower resolution",
  ],
  ErrorKind.NETWORK: [
    "Check your internet connection",
    "Try again in a few moments",
  ],
  ErrorKind.INVALID_FORMAT: [
    "Use PNG, JPG, or JPEG format",
    "Ensure the image file is not corrupted",
  ],
  ErrorKind.VALIDATION: [
    "Keep opacity and position between 0 and 100",
    "Use a positive font size and a non-negative blur",
  ],
}

# Order matters: the first matching kind wins.
_PATTERNS: Sequence[Tuple[ErrorKind, Sequence[str]]] = (
  (ErrorKind.MEMORY, (r"out of memory", r"memory allocation", r"allocation failed", r"memoryerror", r"memory.*limit", r"decompression bomb")),
  (ErrorKind.RENDER_CONTEXT, (r"render context", r"could not get.*context", r"surface.*unavailable")),
  (
    ErrorKind.INVALID_FORMAT,
    (r"invalid.*format", r"unsupported.*format", r"invalid image", r"decode.*failed", r"cannot identify image", r"truncated"),
  ),
  (ErrorKind.NETWORK, (r"connection.*(failed|refused|reset|aborted)", r"failed to fetch", r"network", r"max retries", r"name resolution")),
)


class TextBehindError(RuntimeError):
  kind: ErrorKind = ErrorKind.UNKNOWN

  def __init__(
    self,
    message: str,
    *,
    context: str = "",
    user_message: Optional[str] = None,
    kind: Optional[ErrorKind] = None,
  ):
    super().__init__(message)
    if kind is not None:
      self.kind = kind
    self.context = context
    self.user_message = user_message or USER_MESSAGES[self.kind]

  @property
  def retryable(self) -> bool:
    return self.kind in _RETRYABLE

  def to_dict(self) -> Dict[str, object]:
    return {
      "error": self.kind.value,
      "context": self.context,
      "user_message": self.user_message,
      "retryable": self.retryable,
    }


class ValidationError(TextBehindError, ValueError):
  kind = ErrorKind.VALIDATION

  def __init__(self, problems: Sequence[str], *, context: str = "validation"):
    self.problems = list(problems)
    super().__init__("; ".join(self.problems) or "invalid value", context=context)

  def to_dict(self) -> Dict[str, object]:
    out = super().to_dict()
    out["problems"] = list(self.problems)
    return out


class RenderContextUnavailableError(TextBehindError):
  kind = ErrorKind.RENDER_CONTEXT


class SegmentationTimeoutError(TextBehindError, TimeoutError):
  kind = ErrorKind.SEGMENTATION

  def __init__(self, timeout_s: float):
    self.timeout_s = float(timeout_s)
    super().__init__(f"segmentation did not settle within {self.timeout_s:.1f}s", context="segmentation")


class SegmentationFailureError(TextBehindError):
  kind = ErrorKind.SEGMENTATION

  def __init__(self, message: str):
    super().__init__(message, context="segmentation")


class ResourceExhaustionError(TextBehindError):
  kind = ErrorKind.MEMORY

  def __init__(self, message: str, *, context: str = "upload"):
    super().__init__(message, context=context)
    self.suggestion = "Please use a smaller image."


def classify_error(exc: BaseException) -> ErrorKind:
  if isinstance(exc, TextBehindError):
    return exc.kind
  if isinstance(exc, MemoryError):
    return ErrorKind.MEMORY
  text = f"{type(exc).__name__} {exc}".lower()
  for kind, patterns in _PATTERNS:
    if any(re.search(p, text) for p in patterns):
      return kind
  return ErrorKind.UNKNOWN


def to_user_error(exc: BaseException, context: str) -> TextBehindError:
  """
  Wrap any exception into a TextBehindError carrying a short user message.
  The technical detail stays in the message/cause for the log.
  """
  if isinstance(exc, TextBehindError):
    if not exc.context:
      exc.context = context
    return exc
  kind = classify_error(exc)
  if kind == ErrorKind.MEMORY:
    err: TextBehindError = ResourceExhaustionError(f"{context}: {exc}", context=context)
  elif kind == ErrorKind.RENDER_CONTEXT:
    err = RenderContextUnavailableError(f"{context}: {exc}", context=context)
  else:
    err = TextBehindError(f"{context}: {exc}", context=context, kind=kind)
  err.__cause__ = exc
  return err


def recovery_suggestions(kind: ErrorKind) -> List[str]:
  return list(_SUGGESTIONS.get(kind, []))
