import pytest

from saltchannel import crypto
from saltchannel.channel import Channel, MemoryTransport, State, memory_pipe
from saltchannel.util import (
    APP_PKG_MSG_HEADER,
    ErrorCode,
    Mode,
    SaltError,
    bytes_to_u32,
    increase_nonce,
)

EK_COMMON = bytes([
    0x1b, 0x27, 0x55, 0x64, 0x73, 0xe9, 0x85, 0xd4,
    0x62, 0xcd, 0x51, 0x19, 0x7a, 0x9a, 0x46, 0xc7,
    0x60, 0x09, 0x54, 0x9e, 0xac, 0x64, 0x74, 0xf2,
    0x06, 0xc4, 0xee, 0x08, 0x44, 0xf6, 0x83, 0x89,
])


class _Clock:
    def __init__(self, value=0):
        self.value = value

    def __call__(self):
        return self.value


class _TrickleTransport:
    """Accepts one byte per write."""

    def __init__(self):
        self.sent = bytearray()

    def read(self, size):
        return b""

    def write(self, data):
        self.sent.extend(data[:1])
        return min(1, len(data))


class _BrokenTransport:
    def read(self, size):
        return b""

    def write(self, data):
        raise OSError("link down")


def _pair(client_clock=None, server_clock=None):
    client_t, server_t = memory_pipe()
    client = Channel(Mode.CLIENT, client_t, client_clock)
    server = Channel(Mode.SERVER, server_t, server_clock)
    client.ek_common = EK_COMMON
    server.ek_common = EK_COMMON
    return client, server


def test_memory_transport_read_partial():
    t = MemoryTransport(bytearray(b"abcdef"), bytearray())
    assert t.read(4) == b"abcd"
    assert t.read(10) == b"ef"
    assert t.read(3) == b""


def test_memory_pipe_connects_both_ways():
    a, b = memory_pipe()
    a.write(b"ping")
    b.write(b"pong")
    assert b.read(4) == b"ping"
    assert a.read(4) == b"pong"


def test_write_frame_wire_format():
    a, b = memory_pipe()
    channel = Channel(Mode.CLIENT, a)
    assert channel.write_frame(b"abc") is True
    assert bytes(a.outbox) == b"\x03\x00\x00\x00abc"


def test_frame_round_trip():
    a, b = memory_pipe()
    sender = Channel(Mode.CLIENT, a)
    receiver = Channel(Mode.SERVER, b)
    sender.write_frame(b"hello")
    sender.write_frame(b"")
    assert receiver.read_frame(100) == b"hello"
    assert receiver.read_frame(100) == b""
    assert receiver.read_frame(100) is None


def test_read_frame_pending_until_complete():
    a, b = memory_pipe()
    receiver = Channel(Mode.SERVER, b)
    frame = b"\x05\x00\x00\x00hello"
    results = []
    for byte in frame:
        a.write(bytes([byte]))
        results.append(receiver.read_frame(100))
    assert results[:-1] == [None] * (len(frame) - 1)
    assert results[-1] == b"hello"


def test_read_frame_too_large():
    a, b = memory_pipe()
    sender = Channel(Mode.CLIENT, a)
    receiver = Channel(Mode.SERVER, b)
    sender.write_frame(b"x" * 10)
    with pytest.raises(SaltError) as info:
        receiver.read_frame(9)
    assert info.value.code is ErrorCode.BUFF_TO_SMALL
    assert receiver.state is State.SESSION_CLOSED
    assert receiver.err_code is ErrorCode.BUFF_TO_SMALL


def test_write_frame_pending_on_partial_writes():
    transport = _TrickleTransport()
    channel = Channel(Mode.CLIENT, transport)
    results = [channel.write_frame(b"hi") for _ in range(6)]
    assert results == [False] * 5 + [True]
    assert bytes(transport.sent) == b"\x02\x00\x00\x00hi"


def test_write_frame_io_error():
    channel = Channel(Mode.CLIENT, _BrokenTransport())
    with pytest.raises(SaltError) as info:
        channel.write_frame(b"data")
    assert info.value.code is ErrorCode.IO_WRITE
    assert channel.state is State.SESSION_CLOSED


def test_get_time():
    a, _ = memory_pipe()
    assert Channel(Mode.CLIENT, a).get_time() is None
    assert Channel(Mode.CLIENT, a, _Clock(1234)).get_time() == 1234
    assert Channel(Mode.CLIENT, a, lambda: None).get_time() is None
    assert Channel(Mode.CLIENT, a, _Clock(-1)).get_time() == 0xFFFFFFFF


def test_invalid_mode():
    a, _ = memory_pipe()
    with pytest.raises(ValueError):
        Channel("client", a)


def test_nonces_match_between_peers():
    client, server = _pair()
    assert client.write_nonce == server.read_nonce
    assert server.write_nonce == client.read_nonce
    assert client.write_nonce != server.write_nonce


def test_wrap_unwrap_round_trip():
    client, server = _pair()
    packet = client.wrap(b"payload", APP_PKG_MSG_HEADER)
    assert len(packet) == len(b"payload") + 24
    assert packet[0] == 0x06
    assert packet[1] == 0x00
    header, payload = server.unwrap(packet)
    assert header == APP_PKG_MSG_HEADER
    assert payload == b"payload"
    assert server.state is State.CREATED


def test_wrap_advances_nonce():
    client, server = _pair()
    before = client.write_nonce
    client.wrap(b"a", APP_PKG_MSG_HEADER)
    assert client.write_nonce == increase_nonce(before)


def test_both_directions_over_frames():
    client, server = _pair()
    client.write_frame(client.wrap(b"to server", APP_PKG_MSG_HEADER))
    server.write_frame(server.wrap(b"to client", APP_PKG_MSG_HEADER))
    assert server.unwrap(server.read_frame(200)) == (APP_PKG_MSG_HEADER, b"to server")
    assert client.unwrap(client.read_frame(200)) == (APP_PKG_MSG_HEADER, b"to client")


def test_last_flag_closes_receiver():
    client, server = _pair()
    packet = client.wrap(b"bye", APP_PKG_MSG_HEADER, last=True)
    assert packet[1] == 0x80
    assert server.unwrap(packet) == (APP_PKG_MSG_HEADER, b"bye")
    assert server.state is State.SESSION_CLOSED


def test_unwrap_tampered_packet():
    client, server = _pair()
    packet = bytearray(client.wrap(b"data", APP_PKG_MSG_HEADER))
    packet[5] ^= 0xFF
    with pytest.raises(SaltError) as info:
        server.unwrap(bytes(packet))
    assert info.value.code is ErrorCode.DECRYPTION
    assert server.state is State.SESSION_CLOSED


def test_unwrap_replay_rejected():
    client, server = _pair()
    packet = client.wrap(b"data", APP_PKG_MSG_HEADER)
    server.unwrap(packet)
    with pytest.raises(SaltError) as info:
        server.unwrap(packet)
    assert info.value.code is ErrorCode.DECRYPTION


def test_unwrap_bad_header():
    client, server = _pair()
    packet = bytearray(client.wrap(b"data", APP_PKG_MSG_HEADER))
    packet[0] = 0x05
    with pytest.raises(SaltError) as info:
        server.unwrap(bytes(packet))
    assert info.value.code is ErrorCode.BAD_PROTOCOL


def test_unwrap_bad_flags():
    client, server = _pair()
    packet = bytearray(client.wrap(b"data", APP_PKG_MSG_HEADER))
    packet[1] = 0x01
    with pytest.raises(SaltError) as info:
        server.unwrap(bytes(packet))
    assert info.value.code is ErrorCode.BAD_PROTOCOL


def test_unwrap_too_short():
    _, server = _pair()
    with pytest.raises(SaltError) as info:
        server.unwrap(b"\x06\x00" + b"\x00" * 10)
    assert info.value.code is ErrorCode.BAD_PROTOCOL
    assert server.state is State.SESSION_CLOSED


def test_wrap_without_key():
    a, _ = memory_pipe()
    channel = Channel(Mode.CLIENT, a)
    with pytest.raises(SaltError) as info:
        channel.wrap(b"x", APP_PKG_MSG_HEADER)
    assert info.value.code is ErrorCode.INVALID_STATE


def test_wrap_nonce_wrapped():
    client, _ = _pair()
    client.write_nonce = b"\xff" * 24
    with pytest.raises(SaltError) as info:
        client.wrap(b"x", APP_PKG_MSG_HEADER)
    assert info.value.code is ErrorCode.NONCE_WRAPPED
    assert client.state is State.SESSION_CLOSED


def test_wrap_stamps_elapsed_time():
    clock = _Clock(1500)
    client, _ = _pair(client_clock=clock)
    client.my_epoch = 1000
    nonce = client.write_nonce
    packet = client.wrap(b"t", APP_PKG_MSG_HEADER)
    clear = crypto.box_open_afternm(packet[2:], nonce, EK_COMMON)
    assert bytes_to_u32(clear[2:6]) == 500
    assert clear[6:] == b"t"


def test_delay_within_threshold_accepted():
    client_clock = _Clock(100)
    server_clock = _Clock(50)
    client, server = _pair(client_clock, server_clock)
    client.my_epoch = 0
    server.peer_epoch = 0
    server.delay_threshold = 100
    packet = client.wrap(b"on time", APP_PKG_MSG_HEADER)
    server_clock.value = 150
    assert server.unwrap(packet) == (APP_PKG_MSG_HEADER, b"on time")


def test_delay_detected():
    client_clock = _Clock(100)
    server_clock = _Clock(0)
    client, server = _pair(client_clock, server_clock)
    server.delay_threshold = 100
    packet = client.wrap(b"late", APP_PKG_MSG_HEADER)
    server_clock.value = 1000
    with pytest.raises(SaltError) as info:
        server.unwrap(packet)
    assert info.value.code is ErrorCode.DELAY_DETECTED
    assert server.state is State.SESSION_CLOSED


def test_delay_not_checked_without_threshold():
    client_clock = _Clock(100)
    server_clock = _Clock(100000)
    client, server = _pair(client_clock, server_clock)
    packet = client.wrap(b"late", APP_PKG_MSG_HEADER)
    assert server.unwrap(packet) == (APP_PKG_MSG_HEADER, b"late")


def test_broken_local_time_rejected():
    client, server = _pair(_Clock(10), lambda: None)
    server.delay_threshold = 100
    packet = client.wrap(b"x", APP_PKG_MSG_HEADER)
    with pytest.raises(SaltError) as info:
        server.unwrap(packet)
    assert info.value.code is ErrorCode.INVALID_STATE


def test_packet_time_beyond_31_bits_rejected():
    client, server = _pair(_Clock(0x80000000), _Clock(0))
    server.delay_threshold = 100
    packet = client.wrap(b"x", APP_PKG_MSG_HEADER)
    with pytest.raises(SaltError) as info:
        server.unwrap(packet)
    assert info.value.code is ErrorCode.BAD_PROTOCOL