"""Exception hierarchy for the CANopen master."""

from __future__ import annotations

from typing import Any


class CanOpenError(RuntimeError):
    """Base class of all CANopen errors; may carry the object dictionary key involved."""

    def __init__(self, message: str = "", *, key: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key

    def __str__(self) -> str:
        if self.key is None:
            return self.message
        return f"{self.message} [key {self.key}]"


class PointerInvalid(CanOpenError):
    """An accessor was used before it was bound to storage."""

    def __init__(self, context: str = "", *, key: Any = None) -> None:
        super().__init__("Pointer invalid", key=key)
        self.context = context


class ParseError(CanOpenError):
    """A device description could not be parsed."""


class CanOpenTimeout(CanOpenError):
    """A protocol exchange did not complete in time."""


class AccessError(CanOpenError):
    """An object was read or written against its access rights."""