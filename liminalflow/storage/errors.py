from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke a repository rule (duplicate id, missing parent, terminal record)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(ConstraintViolation):
    """An update targeted a record the repository never stored."""


class TerminalRecordError(ConstraintViolation):
    """An update targeted a record that already reached a terminal status."""


__all__ = ["ConstraintViolation", "RecordNotFound", "TerminalRecordError"]
