"""Shared helpers: error codes, byte encoding, nonces, time checks and app messages."""

from __future__ import annotations

import enum

__all__ = [
    "APP_PKG_MSG_HEADER",
    "MULTI_APP_PKG_MSG_HEADER",
    "ENCRYPTED_MSG_HEADER",
    "A1_HEADER",
    "A2_HEADER",
    "LAST_FLAG",
    "LENGTH_SIZE",
    "HEADER_SIZE",
    "TIME_SIZE",
    "OVERHEAD_SIZE",
    "WRAP_OVERHEAD_IO_SIZE",
    "NONCE_INCREMENT",
    "ErrorCode",
    "SaltError",
    "Mode",
    "mode_to_str",
    "increase_nonce",
    "u16_to_bytes",
    "bytes_to_u16",
    "u32_to_bytes",
    "bytes_to_u32",
    "time_check",
    "parse_app_message",
    "MessageWriter",
]

APP_PKG_MSG_HEADER = 0x05
MULTI_APP_PKG_MSG_HEADER = 0x0B
ENCRYPTED_MSG_HEADER = 0x06
A1_HEADER = 8
A2_HEADER = 9
LAST_FLAG = 0x80

LENGTH_SIZE = 4
HEADER_SIZE = 2
TIME_SIZE = 4
OVERHEAD_SIZE = 38
WRAP_OVERHEAD_IO_SIZE = 24

NONCE_INCREMENT = 2

_U16_MAX = 0xFFFF
_U32_MASK = 0xFFFFFFFF


class ErrorCode(enum.Enum):
    """Reasons a channel operation can fail."""

    NONE = enum.auto()
    BAD_PROTOCOL = enum.auto()
    NO_SUCH_SERVER = enum.auto()
    INVALID_STATE = enum.auto()
    CRYPTO_API = enum.auto()
    IO_WRITE = enum.auto()
    BAD_PEER = enum.auto()
    BUFF_TO_SMALL = enum.auto()
    ENCRYPTION = enum.auto()
    DECRYPTION = enum.auto()
    NONCE_WRAPPED = enum.auto()
    DELAY_DETECTED = enum.auto()
    NULL_PTR = enum.auto()


class SaltError(Exception):
    """A protocol or channel failure carrying an :class:`ErrorCode`."""

    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or code.name)


class Mode(enum.Enum):
    """Which side of the channel we are."""

    SERVER = "server"
    CLIENT = "client"


def mode_to_str(mode: object) -> str:
    """Return the display name of a channel mode."""
    if mode is Mode.SERVER:
        return "SALT_SERVER"
    if mode is Mode.CLIENT:
        return "SALT_CLIENT"
    return "UNKNOWN MODE"


def increase_nonce(nonce: bytes) -> bytes:
    """Return ``nonce`` increased by two as a little-endian number.

    Raises :class:`SaltError` with ``NONCE_WRAPPED`` if the nonce overflows.
    """
    nonce = bytes(nonce)
    value = int.from_bytes(nonce, "little") + NONCE_INCREMENT
    if value >> (8 * len(nonce)):
        raise SaltError(ErrorCode.NONCE_WRAPPED, "nonce wrapped around")
    return value.to_bytes(len(nonce), "little")


def u16_to_bytes(value: int) -> bytes:
    """Encode an unsigned 16-bit value as two little-endian bytes."""
    return int(value).to_bytes(2, "little")


def bytes_to_u16(data: bytes) -> int:
    """Decode the first two bytes of ``data`` as a little-endian value."""
    if len(data) < 2:
        raise ValueError("need at least 2 bytes")
    return int.from_bytes(bytes(data[:2]), "little")


def u32_to_bytes(value: int) -> bytes:
    """Encode an unsigned 32-bit value as four little-endian bytes."""
    return int(value).to_bytes(4, "little")


def bytes_to_u32(data: bytes) -> int:
    """Decode the first four bytes of ``data`` as a little-endian value."""
    if len(data) < 4:
        raise ValueError("need at least 4 bytes")
    return int.from_bytes(bytes(data[:4]), "little")


def time_check(first: int, now: int, peer_time: int, threshold: int) -> bool:
    """Return whether a packet stamped ``peer_time`` arrived within ``threshold``.

    ``first`` is when the peer's epoch was recorded and ``now`` the arrival
    time, both in 32-bit wrapping milliseconds.
    """
    my_time = (now - first) & _U32_MASK
    diff = abs(my_time - peer_time)
    return diff <= threshold


def parse_app_message(header: int, payload: bytes) -> list[bytes]:
    """Split a decrypted application packet into its messages.

    ``header`` is the message type byte. A single application message yields
    one item; a multi application message ``count[2] || (len[2] || data)*``
    yields each message in order.
    """
    payload = bytes(payload)
    if header == APP_PKG_MSG_HEADER:
        return [payload]
    if header != MULTI_APP_PKG_MSG_HEADER:
        raise SaltError(ErrorCode.BAD_PROTOCOL, f"unknown message type {header:#04x}")
    if len(payload) < 2:
        raise SaltError(ErrorCode.BAD_PROTOCOL, "multi message shorter than its count")
    count = bytes_to_u16(payload)
    if count == 0:
        raise SaltError(ErrorCode.BAD_PROTOCOL, "multi message with no messages")

    messages = []
    offset = 2
    for _ in range(count):
        if offset + 2 > len(payload):
            raise SaltError(ErrorCode.BAD_PROTOCOL, "truncated message length")
        size = bytes_to_u16(payload[offset:])
        offset += 2
        if offset + size > len(payload):
            raise SaltError(ErrorCode.BAD_PROTOCOL, "message exceeds packet")
        messages.append(payload[offset:offset + size])
        offset += size
    return messages


class _WriteState(enum.Enum):
    INITIALIZED = enum.auto()
    SINGLE_MSG = enum.auto()
    ERROR = enum.auto()


class MessageWriter:
    """Collects application messages into one packet payload.

    ``capacity`` is the number of payload bytes available; every message
    takes its own length plus two bytes. A message longer than 65535 bytes
    may only be sent alone.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._available = capacity
        self._messages: list[bytes] = []
        self._state = _WriteState.INITIALIZED

    @property
    def available(self) -> int:
        """Bytes still free for further messages."""
        return self._available

    @property
    def count(self) -> int:
        """Number of messages added so far."""
        return len(self._messages)

    def _check(self, size: int) -> None:
        if self._state is _WriteState.ERROR:
            raise SaltError(ErrorCode.INVALID_STATE, "writer is in an error state")
        if self._available < size + 2:
            raise SaltError(ErrorCode.BUFF_TO_SMALL, "message does not fit")
        if size > _U16_MAX:
            if self._messages:
                self._state = _WriteState.ERROR
                raise SaltError(ErrorCode.INVALID_STATE,
                                "a large message must be sent alone")
            self._state = _WriteState.SINGLE_MSG
            return
        if self._messages and self._state is _WriteState.SINGLE_MSG:
            self._state = _WriteState.ERROR
            raise SaltError(ErrorCode.INVALID_STATE,
                            "no messages may follow a large message")

    def append(self, data: bytes) -> None:
        """Add one message."""
        data = bytes(data)
        self._check(len(data))
        self._messages.append(data)
        self._available -= len(data) + 2

    def build(self) -> tuple[int, bytes]:
        """Return ``(header, payload)`` for the collected messages."""
        if not self._messages:
            raise SaltError(ErrorCode.INVALID_STATE, "no messages to send")
        if len(self._messages) == 1:
            return APP_PKG_MSG_HEADER, self._messages[0]
        parts = [u16_to_bytes(len(self._messages))]
        for message in self._messages:
            parts.append(u16_to_bytes(len(message)))
            parts.append(message)
        return MULTI_APP_PKG_MSG_HEADER, b"".join(parts)