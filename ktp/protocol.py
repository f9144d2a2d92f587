"""Constants, wire format and errors of the KTP protocol."""

from __future__ import annotations

import errno as _errno
import struct
from dataclasses import dataclass

SOCK_KTP = 10
MAX_KTP_SOCKETS = 100
MESSAGE_SIZE = 512
BUFFER_SIZE = 10
ENOSPACE = 1
ENOTBOUND = 2
ENOMESSAGE = 3
T = 5
P = 0.05

_HEADER = struct.Struct("4B")
HEADER_SIZE = _HEADER.size


@dataclass(frozen=True)
class KTPHeader:
    """The four-byte header that precedes every KTP datagram."""

    seq_num: int
    rwnd_size: int = 0
    is_ack: bool = False
    is_nospace: bool = False

    def __post_init__(self) -> None:
        for name in ("seq_num", "rwnd_size"):
            value = getattr(self, name)
            if not 0 <= value <= 255:
                raise ValueError(f"{name} must fit in one byte, got {value}")

    def pack(self) -> bytes:
        """Encode the header as it travels on the wire."""
        return _HEADER.pack(
            self.seq_num, self.rwnd_size, int(self.is_ack), int(self.is_nospace)
        )

    @classmethod
    def unpack(cls, data: bytes) -> KTPHeader:
        """Decode the header at the start of ``data``; trailing bytes are ignored."""
        if len(data) < HEADER_SIZE:
            raise ValueError(
                f"KTP header needs {HEADER_SIZE} bytes, got {len(data)}"
            )
        seq_num, rwnd_size, is_ack, is_nospace = _HEADER.unpack_from(data)
        return cls(seq_num, rwnd_size, bool(is_ack), bool(is_nospace))


class KTPError(OSError):
    """Base class of KTP socket errors; carries an errno like the system calls."""

    default_errno = 0
    default_message = "KTP error"

    def __init__(self, message: str | None = None, code: int | None = None) -> None:
        super().__init__(
            self.default_errno if code is None else code,
            message or self.default_message,
        )


class NoSpaceError(KTPError):
    """No free socket slot or no room left in a send buffer."""

    default_errno = ENOSPACE
    default_message = "no space available"


class NotBoundError(KTPError):
    """The destination is not the peer the socket was bound to."""

    default_errno = ENOTBOUND
    default_message = "destination is not the bound peer"


class NoMessageError(KTPError):
    """No message is waiting in the receive buffer."""

    default_errno = ENOMESSAGE
    default_message = "no message available"


class BadDescriptorError(KTPError):
    """The descriptor does not name an open KTP socket."""

    default_errno = _errno.EBADF
    default_message = "bad KTP socket descriptor"