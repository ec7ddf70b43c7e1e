# saltchannel

An implementation of the Salt Channel v2 protocol: a small, mutually
authenticated, encrypted channel between a client and a host, intended for
links such as serial lines, BLE or plain TCP.

Cryptographic building blocks:

- Key exchange: X25519
- Encryption: XSalsa20 stream cipher with Poly1305 authentication
- Signatures: Ed25519
- Hashing: SHA-512

## Installation

```
pip install saltchannel
```

The only runtime dependency is PyNaCl.

## Package layout

| Module                  | Contents |
|-------------------------|----------|
| `saltchannel.crypto`    | Exception-raising layer over the NaCl primitives (`box_*`, `sign*`, `sha512`, `Sha512`, `random_bytes`) |
| `saltchannel.util`      | `ErrorCode`, `SaltError`, `Mode`, little-endian helpers, `increase_nonce`, `time_check`, `parse_app_message`, `MessageWriter` |
| `saltchannel.channel`   | `Channel` (size-prefixed framing, packet encryption and decryption), `State`, `MemoryTransport`, `memory_pipe` |
| `saltchannel.messages`  | Encoding and validation of the handshake messages A1/A2, M1, M2 and the M3/M4 signatures; `Protocols` |
| `saltchannel.handshake` | `ServerHandshake`, `ClientHandshake`, `send_messages`, `receive_messages` |

## Cryptographic primitives

```python
from saltchannel.crypto import Sha512, sha512, sign, sign_keypair, sign_open

pair = sign_keypair()          # (public, secret)
signed = sign(b"Signed message", pair[1])
assert sign_open(signed, pair[0]) == b"Signed message"

h = Sha512()
h.update(b"a")
h.update(b"bc")
assert h.digest() == sha512(b"abc")
```

Failures such as a forged signature or a tampered ciphertext raise
`saltchannel.crypto.CryptoError`.

## Wire helpers

All integers on the wire are little-endian:

```python
from saltchannel.util import bytes_to_u32, u32_to_bytes

assert u32_to_bytes(389) == b"\x85\x01\x00\x00"
assert bytes_to_u32(b"\x85\x01\x00\x00") == 389
```

Application data is sent either as a single application message or as a
multi-message packet. `MessageWriter` collects one or more payloads and
`build()` returns the header byte and payload of the right form;
`parse_app_message(header, payload)` turns a received packet back into its
list of payloads and raises `SaltError` on a malformed packet.

## Running a session

Each side has a `Channel` built from a `Mode` (`Mode.SERVER` or
`Mode.CLIENT`), a transport with non-blocking `read(size)` and `write(data)`
methods, and an optional time source (a callable returning milliseconds).
`memory_pipe()` returns two in-memory transports wired to each other.

The host runs a `ServerHandshake` with its Ed25519 key pair and, optionally,
the `Protocols` it announces in answer to an A1 query; the client runs a
`ClientHandshake` with its own key pair and, optionally, the public signing
key of the host it expects. `step()` returns `True` once the session is
established and `False` while waiting for data, so both sides can be driven
from one loop:

```python
from saltchannel.channel import Channel, memory_pipe
from saltchannel.crypto import sign_keypair
from saltchannel.handshake import (
    ClientHandshake, ServerHandshake, receive_messages, send_messages,
)
from saltchannel.util import Mode

host_end, client_end = memory_pipe()
host = Channel(Mode.SERVER, host_end)
client = Channel(Mode.CLIENT, client_end)

host_hs = ServerHandshake(host, sign_keypair())
client_hs = ClientHandshake(client, sign_keypair())

client_done = host_done = False
while not (client_done and host_done):
    client_done = client_done or client_hs.step()
    host_done = host_done or host_hs.step()

send_messages(client, [b"first", b"second"])
assert receive_messages(host) == [b"first", b"second"]
```

`send_messages(channel, messages, last)` encrypts a batch of messages into
one packet and writes it; with `last=True` the packet carries the last flag
and the session is closed. `receive_messages(channel, max_size)` returns the
messages of the next packet, or `None` while the packet has not fully
arrived. Failures — bad protocol data, a peer other than the expected one,
a detected delay, a wrapped nonce — raise `SaltError` carrying an
`ErrorCode`, and the channel is left in `State.SESSION_CLOSED`.

## What the package does not do

It offers no command-line program and no network server or socket
transport: the only transport included is `MemoryTransport`. To run a
session over a real link, pass any object with `read(size)` and
`write(data)` methods to `Channel`.

## Tests

```
pip install "saltchannel[test]"
pytest
```