"""Response envelope returned by every egress operation.

{ success: bool, message: str, degraded: bool, in_progress: bool, data: T | None }
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    """JSON envelope for all API responses."""

    success: bool
    message: str = ""
    degraded: bool = False
    in_progress: bool = False
    data: T | None = None
