"""Handshake state machines for host and client, and application message I/O.

Both state machines are non-blocking: ``step`` returns ``True`` once the
session is established, ``False`` while I/O is still pending, and raises
:class:`~saltchannel.util.SaltError` when the handshake fails.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from . import crypto
from .channel import Channel, State
from .messages import (
    M1_SIZE_WITH_SIG,
    M2_SIZE,
    Protocols,
    create_m1,
    create_m2,
    create_m3m4_sig,
    handle_a1,
    parse_m1,
    parse_m2,
    verify_m3m4_sig,
)
from .util import (
    A1_HEADER,
    WRAP_OVERHEAD_IO_SIZE,
    ErrorCode,
    Mode,
    MessageWriter,
    SaltError,
    parse_app_message,
)

__all__ = [
    "M3_HEADER",
    "M4_HEADER",
    "ServerHandshake",
    "ClientHandshake",
    "send_messages",
    "receive_messages",
]

M3_HEADER = 0x03
M4_HEADER = 0x04

_M3M4_WRAPPED_SIZE = 120
_A1_MIN_SIZE = 5
_MAX_PAYLOAD = 0xFFFFFFFF - WRAP_OVERHEAD_IO_SIZE
_DEFAULT_MAX_FRAME = 65536

KeyPair = tuple[bytes, bytes]


def _close(channel: Channel, code: ErrorCode) -> None:
    channel.err_code = code
    channel.state = State.SESSION_CLOSED


def _check_peer(expected_peer: bytes | None, peer_sig_pub: bytes) -> None:
    if expected_peer is not None and bytes(expected_peer) != peer_sig_pub:
        raise SaltError(ErrorCode.BAD_PEER, "peer is not the expected one")


def _shared_key(peer_ek_pub: bytes, ek_sec: bytes) -> bytes:
    try:
        return crypto.box_beforenm(peer_ek_pub, ek_sec)
    except crypto.CryptoError as exc:
        raise SaltError(ErrorCode.CRYPTO_API, str(exc)) from exc


class _Handshake:
    """Shared driving logic: run state handlers until one asks to stop."""

    def __init__(self, channel: Channel, sig_keypair: KeyPair,
                 expected_peer: bytes | None,
                 ephemeral_keypair: KeyPair | None) -> None:
        self.channel = channel
        self.sig_pub, self.sig_sec = (bytes(k) for k in sig_keypair)
        self.expected_peer = bytes(expected_peer) if expected_peer is not None else None
        if ephemeral_keypair is None:
            ephemeral_keypair = crypto.box_keypair()
        self.ek_pub, self.ek_sec = (bytes(k) for k in ephemeral_keypair)
        self.peer_sig_pub: bytes | None = None
        self.m1_hash = b""
        self.m2_hash = b""
        self._handlers: dict[State, Callable[[], bool | None]] = {}
        channel.err_code = ErrorCode.NONE
        channel.state = State.SESSION_INITIATED

    def _run(self) -> bool:
        try:
            while True:
                handler = self._handlers.get(self.channel.state)
                if handler is None:
                    raise SaltError(ErrorCode.INVALID_STATE,
                                    f"cannot handshake in state {self.channel.state.name}")
                result = handler()
                if result is not None:
                    return result
        except SaltError as exc:
            _close(self.channel, exc.code)
            raise

    def _note_peer_time(self, time_supported: bool) -> None:
        if time_supported:
            self.channel.peer_epoch = self.channel.get_time() or 0
        else:
            self.channel.time_supported = False

    def _established(self) -> bool:
        return True


class ServerHandshake(_Handshake):
    """Host side of the handshake, also answering A1 protocol queries."""

    def __init__(self, channel: Channel, sig_keypair: KeyPair,
                 protocols: Protocols | None = None,
                 expected_peer: bytes | None = None,
                 ephemeral_keypair: KeyPair | None = None) -> None:
        if channel.mode is not Mode.SERVER:
            raise ValueError("server handshake needs a server channel")
        super().__init__(channel, sig_keypair, expected_peer, ephemeral_keypair)
        self.protocols = protocols
        self._frame = b""
        self._reply = b""
        self._no_such_server = False
        self._peer_ek_pub = b""
        self._packet = b""
        self._handlers = {
            State.SESSION_INITIATED: self._start,
            State.M1_IO: self._read_m1,
            State.A1_HANDLE: self._handle_a1,
            State.A2_IO: self._write_a2,
            State.M1_HANDLE: self._handle_m1,
            State.M2_INIT: self._create_m2,
            State.M2_INIT_NO_SUCH_SERVER: self._create_m2,
            State.M2_IO_AND_SESSION_KEY: self._write_m2_and_key,
            State.M2_IO: self._write_m2,
            State.M3_INIT: self._create_m3,
            State.M3_IO: self._write_m3,
            State.M4_IO: self._read_m4,
            State.M4_HANDLE: self._handle_m4,
            State.SESSION_ESTABLISHED: self._established,
        }

    def step(self) -> bool:
        """Advance the host handshake as far as the transport allows."""
        return self._run()

    def _start(self) -> None:
        self.channel.state = State.M1_IO

    def _read_m1(self) -> bool | None:
        frame = self.channel.read_frame(M1_SIZE_WITH_SIG)
        if frame is None:
            return False
        if len(frame) < _A1_MIN_SIZE:
            raise SaltError(ErrorCode.BAD_PROTOCOL, "first message too short")
        self._frame = frame
        if frame[0] == A1_HEADER and frame[1] == 0x00:
            self.channel.state = State.A1_HANDLE
        else:
            self.channel.state = State.M1_HANDLE
        return None

    def _handle_a1(self) -> None:
        self._reply = handle_a1(self._frame, self.sig_pub, self.protocols)
        self.channel.state = State.A2_IO

    def _write_a2(self) -> bool:
        if self.channel.write_frame(self._reply):
            # The handshake may start over without a new initialisation.
            self.channel.state = State.SESSION_INITIATED
        return False

    def _handle_m1(self) -> None:
        info = parse_m1(self._frame, self.sig_pub)
        self._note_peer_time(info.time_supported)
        self._no_such_server = info.no_such_server
        if info.no_such_server:
            self.channel.err_code = ErrorCode.NO_SUCH_SERVER
            self.channel.state = State.M2_INIT_NO_SUCH_SERVER
            return
        self._peer_ek_pub = info.peer_ek_pub
        self.m1_hash = info.m1_hash
        self.channel.state = State.M2_INIT

    def _create_m2(self) -> None:
        m2, m2_hash = create_m2(self.ek_pub, self.channel.time_source is not None,
                                self._no_such_server)
        self._frame = m2
        self.channel.my_epoch = self.channel.get_time() or 0
        if self._no_such_server:
            self.channel.state = State.M2_IO
        else:
            self.m2_hash = m2_hash or b""
            self.channel.state = State.M2_IO_AND_SESSION_KEY

    def _write_m2_and_key(self) -> bool | None:
        done = self.channel.write_frame(self._frame)
        self.channel.ek_common = _shared_key(self._peer_ek_pub, self.ek_sec)
        if done:
            self.channel.state = State.M3_INIT
            return None
        self.channel.state = State.M2_IO
        return False

    def _write_m2(self) -> bool | None:
        if not self.channel.write_frame(self._frame):
            return False
        if self.channel.err_code is not ErrorCode.NONE:
            raise SaltError(self.channel.err_code)
        self.channel.state = State.M3_INIT
        return None

    def _create_m3(self) -> None:
        body = create_m3m4_sig(Mode.SERVER, self.sig_pub, self.sig_sec,
                               self.m1_hash, self.m2_hash)
        self._packet = self.channel.wrap(body, M3_HEADER)
        self.channel.state = State.M3_IO

    def _write_m3(self) -> bool | None:
        if not self.channel.write_frame(self._packet):
            return False
        self.channel.state = State.M4_IO
        return None

    def _read_m4(self) -> bool | None:
        frame = self.channel.read_frame(_M3M4_WRAPPED_SIZE)
        if frame is None:
            return False
        self._frame = frame
        self.channel.state = State.M4_HANDLE
        return None

    def _handle_m4(self) -> bool:
        if len(self._frame) != _M3M4_WRAPPED_SIZE:
            raise SaltError(ErrorCode.BAD_PROTOCOL, "bad M4 size")
        header, body = self.channel.unwrap(self._frame)
        if header != M4_HEADER:
            raise SaltError(ErrorCode.BAD_PROTOCOL, "bad M4 header")
        peer = verify_m3m4_sig(Mode.SERVER, body, self.m1_hash, self.m2_hash)
        _check_peer(self.expected_peer, peer)
        self.peer_sig_pub = peer
        self.channel.state = State.SESSION_ESTABLISHED
        return True


class ClientHandshake(_Handshake):
    """Client side of the handshake."""

    def __init__(self, channel: Channel, sig_keypair: KeyPair,
                 expected_peer: bytes | None = None,
                 ephemeral_keypair: KeyPair | None = None) -> None:
        if channel.mode is not Mode.CLIENT:
            raise ValueError("client handshake needs a client channel")
        super().__init__(channel, sig_keypair, expected_peer, ephemeral_keypair)
        self._frame = b""
        self._m4_body = b""
        self._packet = b""
        self._handlers = {
            State.SESSION_INITIATED: self._create_m1,
            State.M1_IO: self._write_m1,
            State.M2_IO: self._read_m2,
            State.M2_HANDLE: self._handle_m2,
            State.M3_INIT: self._prepare_m4,
            State.M3_IO: self._read_m3,
            State.M3_HANDLE: self._handle_m3,
            State.M4_WRAP: self._wrap_m4,
            State.M4_IO: self._write_m4,
            State.SESSION_ESTABLISHED: self._established,
        }

    def step(self) -> bool:
        """Advance the client handshake as far as the transport allows."""
        return self._run()

    def _create_m1(self) -> None:
        m1, self.m1_hash = create_m1(self.ek_pub, self.channel.time_source is not None,
                                     self.expected_peer)
        self._frame = m1
        self.channel.my_epoch = self.channel.get_time() or 0
        self.channel.state = State.M1_IO

    def _write_m1(self) -> bool | None:
        if not self.channel.write_frame(self._frame):
            return False
        self.channel.state = State.M2_IO
        return None

    def _read_m2(self) -> bool | None:
        frame = self.channel.read_frame(M2_SIZE)
        if frame is None:
            return False
        self._frame = frame
        self.channel.state = State.M2_HANDLE
        return None

    def _handle_m2(self) -> None:
        info = parse_m2(self._frame)
        self._note_peer_time(info.time_supported)
        self.channel.ek_common = _shared_key(info.peer_ek_pub, self.ek_sec)
        self.m2_hash = info.m2_hash
        self.channel.state = State.M3_INIT

    def _prepare_m4(self) -> None:
        self._m4_body = create_m3m4_sig(Mode.CLIENT, self.sig_pub, self.sig_sec,
                                        self.m1_hash, self.m2_hash)
        self.channel.state = State.M3_IO

    def _read_m3(self) -> bool | None:
        frame = self.channel.read_frame(_M3M4_WRAPPED_SIZE)
        if frame is None:
            return False
        self._frame = frame
        self.channel.state = State.M3_HANDLE
        return None

    def _handle_m3(self) -> None:
        if len(self._frame) != _M3M4_WRAPPED_SIZE:
            raise SaltError(ErrorCode.BAD_PROTOCOL, "bad M3 size")
        header, body = self.channel.unwrap(self._frame)
        if header != M3_HEADER:
            raise SaltError(ErrorCode.BAD_PROTOCOL, "bad M3 header")
        peer = verify_m3m4_sig(Mode.CLIENT, body, self.m1_hash, self.m2_hash)
        _check_peer(self.expected_peer, peer)
        self.peer_sig_pub = peer
        self.channel.state = State.M4_WRAP

    def _wrap_m4(self) -> None:
        self._packet = self.channel.wrap(self._m4_body, M4_HEADER)
        self.channel.state = State.M4_IO

    def _write_m4(self) -> bool:
        if self.channel.write_frame(self._packet):
            self.channel.state = State.SESSION_ESTABLISHED
            return True
        return False


def _require_established(channel: Channel) -> None:
    if channel.state is not State.SESSION_ESTABLISHED:
        _close(channel, ErrorCode.INVALID_STATE)
        raise SaltError(ErrorCode.INVALID_STATE, "session is not established")


def send_messages(channel: Channel, messages: Iterable[bytes], last: bool = False) -> None:
    """Encrypt ``messages`` into one packet and write it to the channel.

    With ``last`` set the packet carries the last flag and the session is
    closed afterwards.
    """
    _require_established(channel)
    writer = MessageWriter(_MAX_PAYLOAD)
    try:
        for message in messages:
            writer.append(message)
        header, payload = writer.build()
    except SaltError as exc:
        _close(channel, exc.code)
        raise
    packet = channel.wrap(payload, header, last)
    while not channel.write_frame(packet):
        pass
    if last:
        channel.state = State.SESSION_CLOSED


def receive_messages(channel: Channel,
                     max_size: int = _DEFAULT_MAX_FRAME) -> list[bytes] | None:
    """Read one packet and return its messages, or ``None`` while pending."""
    _require_established(channel)
    frame = channel.read_frame(max_size)
    if frame is None:
        return None
    header, payload = channel.unwrap(frame)
    try:
        return parse_app_message(header, payload)
    except SaltError as exc:
        _close(channel, exc.code)
        raise