"""Structured results returned by orchestrator operations."""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from session_orchestrator.core.errors import ErrorCode


def to_jsonable(value: Any) -> Any:
    """Convert results, models, enums and paths into JSON-ready values."""
    if isinstance(value, OperationResult):
        return value.to_dict()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if hasattr(value, "__dataclass_fields__"):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    return value


@dataclass
class OperationResult:
    """Base result: success flag plus failure details.

    Precondition and validation failures are reported through these
    results, never raised.
    """

    success: bool = True
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def failure(cls, error: str, code: ErrorCode, **kwargs: Any) -> Any:
        return cls(success=False, error=error, code=code, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable form, omitting unset optional fields."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            data[f.name] = to_jsonable(value)
        return data
