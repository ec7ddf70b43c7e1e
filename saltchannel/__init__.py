"""Salt Channel v2: an authenticated, encrypted channel protocol."""

__version__ = "0.1.0"

__all__ = ["channel", "crypto", "handshake", "messages", "util"]