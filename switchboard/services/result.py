from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a delivery call that reports instead of raising.

    ``retryable`` tells a job worker whether the same attempt may succeed later.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", retryable: bool = False) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, retryable=retryable)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
