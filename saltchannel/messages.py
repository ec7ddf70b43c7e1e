"""Handshake message encoding and validation: A1/A2, M1, M2 and the M3/M4 signatures."""

from __future__ import annotations

from dataclasses import dataclass
from collections.abc import Iterable

from . import crypto
from .util import (
    A1_HEADER,
    A2_HEADER,
    LAST_FLAG,
    ErrorCode,
    Mode,
    SaltError,
    bytes_to_u16,
    bytes_to_u32,
)

__all__ = [
    "NO_SUCH_SERVER_FLAG",
    "PROTOCOL_INDICATOR",
    "PROTOCOL_SIZE",
    "SALT_PROTOCOL_NAME",
    "DEFAULT_PROTOCOL_NAME",
    "M1_SIZE_NO_SIG",
    "M1_SIZE_WITH_SIG",
    "M2_SIZE",
    "M3M4_CLEAR_SIZE",
    "SIG1_PREFIX",
    "SIG2_PREFIX",
    "Protocols",
    "M1Info",
    "M2Info",
    "handle_a1",
    "create_m1",
    "parse_m1",
    "create_m2",
    "parse_m2",
    "create_m3m4_sig",
    "verify_m3m4_sig",
]

NO_SUCH_SERVER_FLAG = 0x01

PROTOCOL_INDICATOR = b"SCv2"
PROTOCOL_SIZE = 10
SALT_PROTOCOL_NAME = b"SCv2------"
DEFAULT_PROTOCOL_NAME = b"----------"
_PROTOCOL_PAD = b"-"
_MAX_PROTOCOLS = 0xFF

_A1_ADDRESSTYPE_ANY = 0x00
_A1_ADDRESSTYPE_ANY_SIZE = 5
_A1_ADDRESSTYPE_ED25519 = 0x01
_A1_ADDRESSTYPE_ED25519_SIZE = 37
_A1_MIN_SIZE = 5

M1_SIZE_NO_SIG = 42
M1_SIZE_WITH_SIG = 74
_M1_HEADER = 0x01
_M1_SIG_KEY_INCLUDED_FLAG = 0x01

M2_SIZE = 38
_M2_HEADER = 0x02

M3M4_CLEAR_SIZE = 96

SIG1_PREFIX = b"SC-SIG01"
SIG2_PREFIX = b"SC-SIG02"

_TIME_SUPPORTED = b"\x01\x00\x00\x00"
_TIME_UNSUPPORTED = b"\x00\x00\x00\x00"

_NO_SUCH_SERVER_A2 = bytes([A2_HEADER, NO_SUCH_SERVER_FLAG | LAST_FLAG, 0x00, 0x00])


def _bad(message: str) -> SaltError:
    return SaltError(ErrorCode.BAD_PROTOCOL, message)


def _pad_protocol(name: str | bytes) -> bytes:
    raw = name.encode("ascii") if isinstance(name, str) else bytes(name)
    if not 0 < len(raw) <= PROTOCOL_SIZE:
        raise ValueError(f"protocol name must be 1 to {PROTOCOL_SIZE} bytes")
    return raw.ljust(PROTOCOL_SIZE, _PROTOCOL_PAD)


def _require_key(name: str, value: bytes, size: int = 32) -> bytes:
    value = bytes(value)
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")
    return value


def _time_field(time_supported: bool) -> bytes:
    return _TIME_SUPPORTED if time_supported else _TIME_UNSUPPORTED


def _parse_time(field: bytes) -> bool:
    value = bytes_to_u32(field)
    if value == 1:
        return True
    if value == 0:
        return False
    raise _bad(f"invalid time field {value}")


class Protocols:
    """Protocols a host announces in its A2 reply.

    Each name is paired with the channel version ``SCv2------`` and padded
    with ``-`` to ten bytes.
    """

    def __init__(self, names: Iterable[str | bytes] = ()) -> None:
        self._pairs = [(SALT_PROTOCOL_NAME, _pad_protocol(name)) for name in names]
        if len(self._pairs) > _MAX_PROTOCOLS:
            raise ValueError(f"at most {_MAX_PROTOCOLS} protocols")

    @property
    def names(self) -> list[bytes]:
        """The padded application protocol names."""
        return [p2 for _, p2 in self._pairs]

    @property
    def entries(self) -> list[bytes]:
        """All protocol strings in wire order, version and name alternating."""
        return [item for pair in self._pairs for item in pair]

    def __len__(self) -> int:
        return len(self._pairs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Protocols):
            return NotImplemented
        return self._pairs == other._pairs

    def __repr__(self) -> str:
        return f"Protocols({self.names!r})"

    def encode(self) -> bytes:
        """Return the A2 message ``header[2] || count[1] || (p1[10] || p2[10])*``."""
        parts = [bytes([A2_HEADER, LAST_FLAG, len(self._pairs)])]
        parts.extend(self.entries)
        return b"".join(parts)

    @classmethod
    def decode(cls, data: bytes) -> Protocols:
        """Parse an A2 message.

        Raises :class:`SaltError` with ``NO_SUCH_SERVER`` if the host refused,
        otherwise ``BAD_PROTOCOL`` for a malformed message.
        """
        data = bytes(data)
        if len(data) < 3 or data[0] != A2_HEADER:
            raise _bad("bad A2 header")
        if data[1] & NO_SUCH_SERVER_FLAG:
            raise SaltError(ErrorCode.NO_SUCH_SERVER, "no such server")
        count = data[2]
        if len(data) != 3 + 2 * PROTOCOL_SIZE * count:
            raise _bad("A2 length does not match protocol count")
        body = data[3:]
        chunks = [body[i:i + PROTOCOL_SIZE] for i in range(0, len(body), PROTOCOL_SIZE)]
        result = cls()
        result._pairs = list(zip(chunks[0::2], chunks[1::2]))
        return result


def handle_a1(data: bytes, my_sig_pub: bytes, protocols: Protocols | None) -> bytes:
    """Validate an A1 request and return the A2 reply.

    If A1 names a host key other than ``my_sig_pub`` the reply carries the
    no-such-server flag. With no protocols given, a reply announcing only
    ``SCv2------`` / ``----------`` is returned.
    """
    data = bytes(data)
    if len(data) < _A1_MIN_SIZE or data[0] != A1_HEADER or data[1] != 0x00:
        raise _bad("bad A1 header")

    address_type = data[2]
    if address_type == _A1_ADDRESSTYPE_ANY:
        if len(data) != _A1_ADDRESSTYPE_ANY_SIZE:
            raise _bad("bad A1 size")
        if data[3] != 0x00 or data[4] != 0x00:
            raise _bad("bad A1 address size")
    elif address_type == _A1_ADDRESSTYPE_ED25519:
        if len(data) != _A1_ADDRESSTYPE_ED25519_SIZE:
            raise _bad("bad A1 size")
        if bytes_to_u16(data[3:5]) != crypto.SIGN_PUBLICKEYBYTES:
            raise _bad("bad A1 address size")
        if data[5:37] != bytes(my_sig_pub):
            return _NO_SUCH_SERVER_A2
    else:
        raise _bad(f"unknown A1 address type {address_type}")

    if protocols is None or len(protocols) == 0:
        protocols = Protocols([DEFAULT_PROTOCOL_NAME])
    return protocols.encode()


@dataclass(frozen=True)
class M1Info:
    """What a host learns from a client's M1."""

    peer_ek_pub: bytes
    time_supported: bool
    m1_hash: bytes
    no_such_server: bool = False


@dataclass(frozen=True)
class M2Info:
    """What a client learns from a host's M2."""

    peer_ek_pub: bytes
    time_supported: bool
    m2_hash: bytes


def create_m1(ek_pub: bytes, time_supported: bool,
              host_sig_pub: bytes | None = None) -> tuple[bytes, bytes]:
    """Build M1 and return ``(m1, sha512(m1))``.

    ``host_sig_pub`` names the host the client expects, if any.
    """
    ek_pub = _require_key("ek_pub", ek_pub)
    flags = _M1_SIG_KEY_INCLUDED_FLAG if host_sig_pub is not None else 0x00
    m1 = (PROTOCOL_INDICATOR + bytes([_M1_HEADER, flags])
          + _time_field(time_supported) + ek_pub)
    if host_sig_pub is not None:
        m1 += _require_key("host_sig_pub", host_sig_pub)
    return m1, crypto.sha512(m1)


def parse_m1(data: bytes, my_sig_pub: bytes) -> M1Info:
    """Validate a received M1.

    ``no_such_server`` is set when the client asked for a host key other
    than ``my_sig_pub``.
    """
    data = bytes(data)
    if len(data) not in (M1_SIZE_NO_SIG, M1_SIZE_WITH_SIG):
        raise _bad(f"bad M1 size {len(data)}")
    if data[:4] != PROTOCOL_INDICATOR:
        raise _bad("bad protocol indicator")
    if data[4] != _M1_HEADER:
        raise _bad("bad M1 header")
    time_supported = _parse_time(data[6:10])

    no_such_server = False
    if data[5] & _M1_SIG_KEY_INCLUDED_FLAG and len(data) == M1_SIZE_WITH_SIG:
        no_such_server = data[42:74] != bytes(my_sig_pub)

    return M1Info(
        peer_ek_pub=data[10:42],
        time_supported=time_supported,
        m1_hash=crypto.sha512(data),
        no_such_server=no_such_server,
    )


def create_m2(ek_pub: bytes, time_supported: bool,
              no_such_server: bool = False) -> tuple[bytes, bytes | None]:
    """Build M2 and return ``(m2, sha512(m2))``.

    A no-such-server M2 carries a zero key, the last flag, and no hash.
    """
    if no_such_server:
        header = bytes([_M2_HEADER, NO_SUCH_SERVER_FLAG | LAST_FLAG])
        m2 = header + _time_field(time_supported) + bytes(crypto.BOX_PUBLICKEYBYTES)
        return m2, None
    ek_pub = _require_key("ek_pub", ek_pub)
    m2 = bytes([_M2_HEADER, 0x00]) + _time_field(time_supported) + ek_pub
    return m2, crypto.sha512(m2)


def parse_m2(data: bytes) -> M2Info:
    """Validate a received M2; raises ``NO_SUCH_SERVER`` if the host refused."""
    data = bytes(data)
    if len(data) != M2_SIZE:
        raise _bad(f"bad M2 size {len(data)}")
    if data[0] != _M2_HEADER:
        raise _bad("bad M2 header")
    if data[1] & NO_SUCH_SERVER_FLAG:
        raise SaltError(ErrorCode.NO_SUCH_SERVER, "no such server")
    time_supported = _parse_time(data[2:6])
    return M2Info(
        peer_ek_pub=data[6:38],
        time_supported=time_supported,
        m2_hash=crypto.sha512(data),
    )


def _prefix_for_signer(mode: Mode) -> bytes:
    return SIG1_PREFIX if mode is Mode.SERVER else SIG2_PREFIX


def create_m3m4_sig(mode: Mode, sig_pub: bytes, sig_sec: bytes,
                    m1_hash: bytes, m2_hash: bytes) -> bytes:
    """Return the clear M3/M4 body ``sig_pub[32] || signature[64]``.

    The host signs with prefix ``SC-SIG01``, the client with ``SC-SIG02``.
    """
    sig_pub = _require_key("sig_pub", sig_pub)
    to_sign = _prefix_for_signer(mode) + bytes(m1_hash) + bytes(m2_hash)
    try:
        signed = crypto.sign(to_sign, sig_sec)
    except crypto.CryptoError as exc:
        raise SaltError(ErrorCode.CRYPTO_API, str(exc)) from exc
    return sig_pub + signed[:crypto.SIGN_BYTES]


def verify_m3m4_sig(mode: Mode, data: bytes, m1_hash: bytes, m2_hash: bytes) -> bytes:
    """Verify the peer's M3/M4 body and return the peer's public signing key.

    ``mode`` is our own mode; the peer's prefix is the opposite one.
    """
    data = bytes(data)
    if len(data) != M3M4_CLEAR_SIZE:
        raise _bad(f"bad M3/M4 size {len(data)}")
    peer_sig_pub = data[:32]
    signature = data[32:96]
    peer_mode = Mode.CLIENT if mode is Mode.SERVER else Mode.SERVER
    message = _prefix_for_signer(peer_mode) + bytes(m1_hash) + bytes(m2_hash)
    try:
        crypto.sign_verify_detached(signature, message, peer_sig_pub)
    except crypto.CryptoError as exc:
        raise SaltError(ErrorCode.BAD_PEER, "signature verification failed") from exc
    return peer_sig_pub