"""Tagged success/failure values for pipeline sub-calls."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CallResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, input_tokens: int = 0, output_tokens: int = 0) -> "CallResult[T]":
        return cls(value=value, input_tokens=input_tokens, output_tokens=output_tokens)

    @classmethod
    def failure(
        cls,
        error: str,
        error_type: str = "generic",
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> "CallResult[T]":
        return cls(error=error, error_type=error_type, input_tokens=input_tokens, output_tokens=output_tokens)
