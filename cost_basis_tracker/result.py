from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a domain operation that can fail in an expected way.

    Pure calculation code returns ``Result.err(SomeError(...))`` instead of
    raising, so callers (trackers) decide whether to abort or skip.
    """
    _value: Optional[T] = None
    _error: Optional[Exception] = None

    @classmethod
    def ok(cls, value: Any = None) -> "Result":
        return cls(_value=value)

    @classmethod
    def err(cls, error: Exception) -> "Result":
        if not isinstance(error, Exception):
            raise TypeError(f"Result.err expects an exception, got {type(error).__name__}")
        return cls(_error=error)

    @property
    def is_ok(self) -> bool:
        return self._error is None

    @property
    def is_err(self) -> bool:
        return self._error is not None

    @property
    def value(self) -> T:
        if self._error is not None:
            raise ValueError(f"Called value on an error result: {self._error}")
        return self._value

    @property
    def error(self) -> Exception:
        if self._error is None:
            raise ValueError("Called error on an ok result")
        return self._error

    def unwrap(self) -> T:
        """Return the value or raise the carried exception."""
        if self._error is not None:
            raise self._error
        return self._value
