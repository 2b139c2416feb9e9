from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    PARSE = "parse"


FAILURE_STATUS_CODES: dict[FailureKind, int] = {
    FailureKind.VALIDATION: 400,
    FailureKind.RATE_LIMITED: 429,
    FailureKind.NOT_FOUND: 404,
    FailureKind.TRANSPORT: 502,
    FailureKind.PARSE: 422,
}


@dataclass(slots=True, frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(slots=True, frozen=True)
class Failure:
    kind: FailureKind
    message: str
    retry_after_seconds: int | None = None

    @property
    def status_code(self) -> int:
        return FAILURE_STATUS_CODES[self.kind]
