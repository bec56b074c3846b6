"""Error taxonomy shared by the connectors and the synchronization core."""

from __future__ import annotations

import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Tuple

DEFAULT_TIMEOUT_MS = 5000


class ErrorKind(str, Enum):
    LOGIN = "login"
    READ = "read"
    UPDATE = "update"
    CREATE = "create"
    DELETE = "delete"
    NOT_READY = "not_ready"
    INVALID_OPERATION = "invalid_operation"


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Structured diagnostics reported by the remote side."""

    server_messages: Tuple[str, ...] = field(default_factory=tuple)
    remote_trace: Tuple[Tuple[str, ...], ...] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        server_messages: Optional[Iterable[str]] = None,
        remote_trace: Optional[Iterable[Iterable[str]]] = None,
    ) -> "ErrorInfo":
        return cls(
            server_messages=tuple(str(message) for message in server_messages or ()),
            remote_trace=tuple(tuple(str(line) for line in group) for group in remote_trace or ()),
        )

    def is_empty(self) -> bool:
        return not self.server_messages and not self.remote_trace


class ConnectorError(RuntimeError):
    """Failure of a connector call, categorized by ``kind``.

    Instances are read-only once built. The queue in the application state
    tracks them by identity, so two errors with the same text are still two
    entries.
    """

    def __init__(
        self,
        kind: ErrorKind | str,
        message: str,
        info: Optional[ErrorInfo] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self._kind = ErrorKind(kind)
        self._message = message
        self._info = info
        self._original = original
        self._uid = uuid.uuid4().hex
        if original is not None:
            self.__cause__ = original

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def info(self) -> Optional[ErrorInfo]:
        return self._info

    @property
    def original(self) -> Optional[BaseException]:
        return self._original

    @property
    def uid(self) -> str:
        return self._uid

    @property
    def icon(self) -> str:
        if self._kind is ErrorKind.LOGIN:
            return "log-in"
        if self._kind is ErrorKind.INVALID_OPERATION:
            return "error"
        return "globe-network"

    @property
    def intent(self) -> str:
        if self._kind is ErrorKind.INVALID_OPERATION:
            return "warning"
        return "danger"

    @property
    def timeout(self) -> int:
        return DEFAULT_TIMEOUT_MS

    def describe(self) -> str:
        """Message followed by the traceback of the causal error, if any."""

        lines = [f"{self._kind.value}: {self._message}"]
        if self._original is not None:
            lines.append("Caused by:")
            lines.extend(
                line.rstrip("\n")
                for line in traceback.format_exception(
                    type(self._original), self._original, self._original.__traceback__
                )
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"ConnectorError(kind={self._kind.value!r}, message={self._message!r})"

    # ------------------------------------------------------------------
    # Constructors per kind
    # ------------------------------------------------------------------
    @classmethod
    def login(cls, message: str, info: Optional[ErrorInfo] = None,
              original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.LOGIN, message, info, original)

    @classmethod
    def read(cls, message: str, info: Optional[ErrorInfo] = None,
             original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.READ, message, info, original)

    @classmethod
    def update(cls, message: str, info: Optional[ErrorInfo] = None,
               original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.UPDATE, message, info, original)

    @classmethod
    def create(cls, message: str, info: Optional[ErrorInfo] = None,
               original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.CREATE, message, info, original)

    @classmethod
    def delete(cls, message: str, info: Optional[ErrorInfo] = None,
               original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.DELETE, message, info, original)

    @classmethod
    def not_ready(cls, message: str, info: Optional[ErrorInfo] = None,
                  original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.NOT_READY, message, info, original)

    @classmethod
    def invalid_operation(cls, message: str, info: Optional[ErrorInfo] = None,
                          original: Optional[BaseException] = None) -> "ConnectorError":
        return cls(ErrorKind.INVALID_OPERATION, message, info, original)


__all__ = ["ConnectorError", "ErrorInfo", "ErrorKind", "DEFAULT_TIMEOUT_MS"]
