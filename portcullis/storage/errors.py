from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store refused a write that would break a uniqueness rule.

    ``constraint`` names the rule (e.g. ``api_key_active_name``) so callers can
    tell a duplicate key name apart from other conflicts without parsing text.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


__all__ = ["ConstraintViolation"]
