from __future__ import annotations

from typing import Optional


class TftpError(Exception):
    """Base class for every failure raised by the TFTP server."""


class PacketError(TftpError, ValueError):
    """A datagram could not be decoded into a valid packet."""


class MalformedPacket(PacketError):
    pass


class UnsupportedMode(PacketError):
    pass


class NetworkIO(TftpError):
    """Non-timeout socket failure while talking to a client."""

    def __init__(self, message: str, cause: Optional[OSError] = None) -> None:
        super().__init__(message)
        self.cause = cause


class RetriesExhausted(TftpError):
    def __init__(self, block: int, attempts: int) -> None:
        super().__init__(f"no acknowledgment for block {block} after {attempts} attempts")
        self.block = block
        self.attempts = attempts


class PeerError(TftpError):
    """The client answered with an ERROR packet."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"peer reported error {code}: {message}")
        self.code = code
        self.message = message
