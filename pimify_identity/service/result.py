from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pimify_identity.service.errors import ErrorKind, error_for


@dataclass
class Result:
    """Uniform ``{success, data?, error?}`` envelope returned by mutating
    service operations."""

    success: bool
    data: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **detail: Any) -> "Result":
        return cls(success=True, data=data, detail=detail)

    @classmethod
    def fail(cls, kind: ErrorKind, message: Optional[str] = None, **detail: Any) -> "Result":
        return cls(success=False, error=ErrorKind(kind), message=message, detail=detail)

    def unwrap(self) -> Any:
        """Return ``data`` or raise the ServiceError matching ``error``."""
        if self.success:
            return self.data
        raise error_for(self.error or ErrorKind.INTERNAL_ERROR, self.message, **self.detail)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error.value
        if self.message:
            payload["message"] = self.message
        if self.detail:
            payload["details"] = self.detail
        return payload


__all__ = ["Result"]
