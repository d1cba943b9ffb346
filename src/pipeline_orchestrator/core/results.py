"""Tagged success/failure values returned across component seams."""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: str
    detail: str
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return False


Result = Ok[Any] | Err
