from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or ownership rule of the relay tables was broken.

    ``constraint`` names the rule (``user_assistant_unique``,
    ``conversation_missing`` ...) so the API layer can report it without
    leaking driver messages.
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
        self.constraint = constraint
        self.detail = dict(detail or {})
        if constraint:
            self.detail.setdefault("constraint", constraint)


__all__ = ["ConstraintViolation"]
