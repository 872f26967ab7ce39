"""
Result Pattern implementation for type-safe error handling.

Repository calls return a Result instead of raising, so fallback paths can
degrade to an empty answer without a try/except at every call site.

Example:
    result = await repository.list_active()
    match result:
        case Success(rows):
            ...
        case Failure(error):
            logger.warning("fallback failed: %s", error)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union, cast

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Represents a successful operation result."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Extract the success value."""
        return self.value

    def unwrap_or(self, _default: T) -> T:
        """Extract value or return default (returns value)."""
        return self.value

    def map(self, func: Callable[[T], U]) -> Result[U, E]:
        """Transform the success value."""
        try:
            return Success(func(self.value))
        except Exception as e:
            return Failure(cast(E, e))

    def __repr__(self) -> str:
        return f"Success({self.value!r})"


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """Represents a failed operation result."""

    error: E

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raises the error when trying to extract value."""
        if isinstance(self.error, Exception):
            raise self.error
        raise RuntimeError(f"Operation failed: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Extract value or return default (returns default)."""
        return default

    def map(self, _func: Callable[[T], U]) -> Result[U, E]:
        """Skip transformation on failure."""
        return cast(Result[U, E], self)

    def __repr__(self) -> str:
        return f"Failure({self.error!r})"


Result = Union[Success[T], Failure[E]]


def success(value: T) -> Success[T]:
    """Create a Success result."""
    return Success(value)


def failure(error: E) -> Failure[E]:
    """Create a Failure result."""
    return Failure(error)


@dataclass(frozen=True, slots=True)
class DatabaseError:
    """Database operation error."""

    operation: str
    message: str
    original_exception: Exception | None = None

    def __str__(self) -> str:
        return f"Database error during {self.operation}: {self.message}"


__all__ = [
    "DatabaseError",
    "Failure",
    "Result",
    "Success",
    "failure",
    "success",
]
