from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness constraint was violated (duplicate email, username, ...)."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if field:
            self.detail.setdefault("field", field)


class MissingReference(ConstraintViolation):
    """A row references a user, channel, category or post that does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            f"{entity} {entity_id} does not exist",
            {"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


__all__ = ["ConstraintViolation", "MissingReference"]
