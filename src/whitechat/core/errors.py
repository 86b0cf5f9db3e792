from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    PERSISTENCE = "persistence"
    COMPLETION = "completion"
    SUBSCRIPTION = "subscription"


class WhiteChatError(Exception):
    kind: ErrorKind


class PersistenceError(WhiteChatError):
    """A remote store write failed. The optimistic change behind it is rolled back."""

    kind = ErrorKind.PERSISTENCE


class CompletionError(WhiteChatError):
    """The completion endpoint failed, was unreachable, or has no credential."""

    kind = ErrorKind.COMPLETION


class SubscriptionError(WhiteChatError):
    """A change stream could not be established or was interrupted."""

    kind = ErrorKind.SUBSCRIPTION


@dataclass(frozen=True)
class StoreError:
    kind: ErrorKind
    message: str = ""

    @classmethod
    def from_exception(cls, exc: WhiteChatError) -> "StoreError":
        return cls(kind=exc.kind, message=str(exc))
