# donor_alerts/models/result.py
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class HandlerResult(Generic[T]):
    """
    What every handler and sweeper hands back to its caller instead of
    raising. The event bus reads `retryable` to decide between redelivery
    and log-and-drop.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "HandlerResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: Optional[str] = None,
        retryable: bool = False,
    ) -> "HandlerResult[T]":
        return cls(success=False, error=error, error_code=error_code, retryable=retryable)

    @classmethod
    def from_exception(
        cls, exc: Exception, error_code: Optional[str] = None, retryable: bool = False
    ) -> "HandlerResult[T]":
        return cls(
            success=False,
            error=str(exc) or exc.__class__.__name__,
            error_code=error_code or exc.__class__.__name__.upper(),
            retryable=retryable,
        )

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        response: Dict[str, Any] = {"success": False, "error": self.error}
        if self.error_code:
            response["error_code"] = self.error_code
        return response

    def __bool__(self) -> bool:
        return self.success
