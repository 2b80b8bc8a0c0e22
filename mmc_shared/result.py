"""
Result values returned by every cache, migration and dispatch operation.

Operations never raise for expected failures (locked database, blocked schema, missing
tool); they return `Result.Err(code, message, **meta)` and callers branch on `ok`.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar, cast

from .types import ErrorCode

T = TypeVar("T")
U = TypeVar("U")

OK_CODE = "OK"


def _code_value(code: Any) -> str:
    return str(code.value if isinstance(code, Enum) else code)


@dataclass
class Result(Generic[T]):
    """
    Example:
        res = await store.aget(path)
        if not res.ok:
            return res.forward()
        entry = res.data  # CacheEntry or None on a miss
    """
    ok: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: str = OK_CODE
    meta: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def Ok(data: T, **meta: Any) -> "Result[T]":
        return Result(ok=True, data=data, code=OK_CODE, meta=meta)

    @staticmethod
    def Err(code: ErrorCode | str | Enum, error: str, **meta: Any) -> "Result[T]":
        return Result(ok=False, error=error, code=_code_value(code), meta=meta)

    def is_code(self, *codes: ErrorCode | str) -> bool:
        """True when this result carries one of `codes`."""
        return self.code in {_code_value(c) for c in codes}

    def with_meta(self, **extra: Any) -> "Result[T]":
        return Result(ok=self.ok, data=self.data, error=self.error, code=self.code, meta={**self.meta, **extra})

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        """Apply `fn` to the data of a successful result; errors pass through unchanged."""
        if self.ok and self.data is not None:
            return Result.Ok(fn(self.data), **self.meta)
        return cast(Result[U], self)

    def unwrap(self) -> T:
        if self.ok and self.data is not None:
            return self.data
        raise ValueError(f"[{self.code}] {self.error}")

    def unwrap_or(self, default: T) -> T:
        return self.data if (self.ok and self.data is not None) else default

    def forward(self) -> "Result[Any]":
        """Re-type an error so it can be returned from a call with a different payload type."""
        return Result.Err(self.code or ErrorCode.DB_ERROR, self.error or "Operation failed", **(self.meta or {}))

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape used by the HTTP surface: `{ok, data, error, code, meta}`."""
        return {"ok": self.ok, "data": self.data, "error": self.error, "code": self.code, "meta": self.meta}
