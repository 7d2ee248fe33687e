from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ConstraintViolation(Exception):
    """A unique key (email, username, device token) or owning row check failed."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingSchemaError(RuntimeError):
    """The database is reachable but lacks tables this store reads and writes."""

    def __init__(self, tables: Iterable[str]):
        self.tables = sorted(tables)
        super().__init__(f"missing required tables: {', '.join(self.tables)}")


__all__ = ["ConstraintViolation", "MissingSchemaError"]
