"""Framed transport I/O and packet encryption for one end of a channel."""

from __future__ import annotations

import enum
from collections.abc import Callable
from typing import Protocol

from . import crypto
from .util import (
    ENCRYPTED_MSG_HEADER,
    LAST_FLAG,
    LENGTH_SIZE,
    WRAP_OVERHEAD_IO_SIZE,
    ErrorCode,
    Mode,
    SaltError,
    bytes_to_u32,
    increase_nonce,
    time_check,
    u32_to_bytes,
)

__all__ = [
    "State",
    "MemoryTransport",
    "memory_pipe",
    "Channel",
]

_U32_MASK = 0xFFFFFFFF
_INT32_MAX = 0x7FFFFFFF
_TIME_OFFSET = 2
_CLEAR_HEADER_SIZE = 6


class State(enum.Enum):
    """Session and handshake states of a channel."""

    CREATED = enum.auto()
    SESSION_INITIATED = enum.auto()
    M1_IO = enum.auto()
    A1_HANDLE = enum.auto()
    A2_IO = enum.auto()
    M1_HANDLE = enum.auto()
    M2_INIT_NO_SUCH_SERVER = enum.auto()
    M2_INIT = enum.auto()
    M2_IO_AND_SESSION_KEY = enum.auto()
    M2_IO = enum.auto()
    M2_HANDLE = enum.auto()
    M3_INIT = enum.auto()
    M3_IO = enum.auto()
    M3_HANDLE = enum.auto()
    M4_WRAP = enum.auto()
    M4_IO = enum.auto()
    M4_HANDLE = enum.auto()
    SESSION_ESTABLISHED = enum.auto()
    SESSION_CLOSED = enum.auto()
    ERROR_STATE = enum.auto()


class _Transport(Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...


class MemoryTransport:
    """Non-blocking in-memory transport.

    ``read`` returns whatever is available up to ``size`` bytes, possibly
    nothing; ``write`` appends everything and returns the number of bytes.
    """

    def __init__(self, inbox: bytearray | None = None,
                 outbox: bytearray | None = None) -> None:
        self.inbox = inbox if inbox is not None else bytearray()
        self.outbox = outbox if outbox is not None else bytearray()

    def read(self, size: int) -> bytes:
        """Take up to ``size`` bytes from the inbox."""
        if size < 0:
            raise ValueError("size must not be negative")
        chunk = bytes(self.inbox[:size])
        del self.inbox[:len(chunk)]
        return chunk

    def write(self, data: bytes) -> int:
        """Append ``data`` to the outbox."""
        self.outbox.extend(data)
        return len(data)


def memory_pipe() -> tuple[MemoryTransport, MemoryTransport]:
    """Return two transports wired to each other."""
    a_to_b = bytearray()
    b_to_a = bytearray()
    return MemoryTransport(b_to_a, a_to_b), MemoryTransport(a_to_b, b_to_a)


def _initial_nonce(value: int) -> bytes:
    return value.to_bytes(crypto.BOX_NONCEBYTES, "little")


class Channel:
    """One end of a channel: length-framed I/O plus encrypted packets.

    Frame I/O is non-blocking: ``read_frame`` returns ``None`` and
    ``write_frame`` returns ``False`` while the operation is still pending;
    calling again continues it.
    """

    def __init__(self, mode: Mode, transport: _Transport,
                 time_source: Callable[[], int | None] | None = None) -> None:
        if not isinstance(mode, Mode):
            raise ValueError(f"invalid mode {mode!r}")
        self.mode = mode
        self.transport = transport
        self.time_source = time_source
        self.state = State.CREATED
        self.err_code = ErrorCode.NONE

        self.ek_common: bytes | None = None
        if mode is Mode.CLIENT:
            self.write_nonce = _initial_nonce(1)
            self.read_nonce = _initial_nonce(2)
        else:
            self.write_nonce = _initial_nonce(2)
            self.read_nonce = _initial_nonce(1)

        self.time_supported = time_source is not None
        self.delay_threshold = 0
        self.my_epoch = 0
        self.peer_epoch = 0

        self._read_buffer = bytearray()
        self._read_expected: int | None = None
        self._write_pending: bytes | None = None

    def _fail(self, code: ErrorCode, message: str | None = None) -> SaltError:
        self.err_code = code
        self.state = State.SESSION_CLOSED
        return SaltError(code, message)

    def get_time(self) -> int | None:
        """Return the current 32-bit time, or ``None`` if no time is available."""
        if self.time_source is None:
            return None
        value = self.time_source()
        if value is None:
            return None
        return int(value) & _U32_MASK

    def read_frame(self, max_size: int) -> bytes | None:
        """Read one ``size[4] || data`` frame; return ``data`` or ``None`` if pending."""
        if self._read_expected is None:
            need = LENGTH_SIZE - len(self._read_buffer)
            if need:
                self._read_buffer.extend(self.transport.read(need))
            if len(self._read_buffer) < LENGTH_SIZE:
                return None
            expected = bytes_to_u32(self._read_buffer)
            self._read_buffer.clear()
            if expected > max_size:
                raise self._fail(ErrorCode.BUFF_TO_SMALL,
                                 f"frame of {expected} bytes exceeds {max_size}")
            self._read_expected = expected

        need = self._read_expected - len(self._read_buffer)
        if need:
            self._read_buffer.extend(self.transport.read(need))
        if len(self._read_buffer) < self._read_expected:
            return None
        data = bytes(self._read_buffer)
        self._read_buffer.clear()
        self._read_expected = None
        return data

    def write_frame(self, payload: bytes) -> bool:
        """Write ``payload`` with its size prefix; return ``True`` once all is sent."""
        if self._write_pending is None:
            payload = bytes(payload)
            self._write_pending = u32_to_bytes(len(payload)) + payload
        try:
            written = self.transport.write(self._write_pending)
        except OSError as exc:
            self._write_pending = None
            raise self._fail(ErrorCode.IO_WRITE, str(exc)) from exc
        self._write_pending = self._write_pending[written:]
        if self._write_pending:
            return False
        self._write_pending = None
        return True

    def wrap(self, payload: bytes, header: int, last: bool = False) -> bytes:
        """Encrypt ``payload`` as a message of type ``header``.

        Returns ``0x06 || flags || mac[16] || cipher`` ready for ``write_frame``.
        """
        if self.ek_common is None:
            raise self._fail(ErrorCode.INVALID_STATE, "no session key")
        now = self.get_time() or 0
        elapsed = (now - self.my_epoch) & _U32_MASK
        clear = bytes([header & 0xFF, 0x00]) + u32_to_bytes(elapsed) + bytes(payload)
        try:
            cipher = crypto.box_afternm(clear, self.write_nonce, self.ek_common)
        except crypto.CryptoError as exc:
            raise self._fail(ErrorCode.ENCRYPTION, str(exc)) from exc
        try:
            self.write_nonce = increase_nonce(self.write_nonce)
        except SaltError as exc:
            raise self._fail(ErrorCode.NONCE_WRAPPED, str(exc)) from exc
        flags = LAST_FLAG if last else 0x00
        return bytes([ENCRYPTED_MSG_HEADER, flags]) + cipher

    def unwrap(self, packet: bytes) -> tuple[int, bytes]:
        """Verify and decrypt a packet; return ``(header, payload)``."""
        packet = bytes(packet)
        if (len(packet) < 2 or packet[0] != ENCRYPTED_MSG_HEADER
                or packet[1] & ~LAST_FLAG & 0xFF):
            raise self._fail(ErrorCode.BAD_PROTOCOL, "bad encrypted message header")
        if packet[1] & LAST_FLAG:
            self.state = State.SESSION_CLOSED
        if len(packet) < WRAP_OVERHEAD_IO_SIZE:
            raise self._fail(ErrorCode.BAD_PROTOCOL, "encrypted message too short")
        if self.ek_common is None:
            raise self._fail(ErrorCode.INVALID_STATE, "no session key")

        try:
            clear = crypto.box_open_afternm(packet[2:], self.read_nonce, self.ek_common)
        except crypto.CryptoError as exc:
            raise self._fail(ErrorCode.DECRYPTION, str(exc)) from exc
        try:
            self.read_nonce = increase_nonce(self.read_nonce)
        except SaltError as exc:
            raise self._fail(ErrorCode.NONCE_WRAPPED, str(exc)) from exc

        if self.time_supported and self.delay_threshold > 0:
            t_package = bytes_to_u32(clear[_TIME_OFFSET:])
            if t_package > _INT32_MAX:
                raise self._fail(ErrorCode.BAD_PROTOCOL, "packet time out of range")
            t_arrival = self.get_time()
            if t_arrival is None:
                raise self._fail(ErrorCode.INVALID_STATE, "local time unavailable")
            if not time_check(self.peer_epoch, t_arrival, t_package,
                              self.delay_threshold):
                raise self._fail(ErrorCode.DELAY_DETECTED, "packet delayed")

        return clear[0], clear[_CLEAR_HEADER_SIZE:]