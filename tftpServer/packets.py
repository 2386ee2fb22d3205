from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Union

from .errors import MalformedPacket, UnsupportedMode

BLOCK_SIZE = 512
DATAGRAM_SIZE = BLOCK_SIZE + 4
MAX_BLOCK_NUMBER = 65535
MODE_OCTET = "octet"

_HEADER = struct.Struct("!HH")  # opcode, block number / error code
_OPCODE = struct.Struct("!H")


class Opcode(enum.IntEnum):
    READ = 1
    WRITE = 2
    DATA = 3
    ACK = 4
    ERROR = 5


class ErrorCode(enum.IntEnum):
    UNDEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TRANSFER_ID = 5
    FILE_ALREADY_EXISTS = 6
    NO_SUCH_USER = 7


def _read_opcode(raw: bytes) -> int:
    if len(raw) < _OPCODE.size:
        raise MalformedPacket("datagram too small to carry an opcode")
    return _OPCODE.unpack_from(raw)[0]


def _read_cstring(raw: bytes, start: int, field: str, errors: str = "strict") -> tuple[str, int]:
    """Return the null-terminated string at ``start`` and the offset just past its terminator."""
    end = raw.find(b"\x00", start)
    if end < 0:
        raise MalformedPacket(f"{field} is not null-terminated")
    try:
        value = raw[start:end].decode("utf-8", errors)
    except UnicodeDecodeError as exc:
        raise MalformedPacket(f"{field} is not valid UTF-8") from exc
    return value, end + 1


@dataclass(frozen=True, slots=True)
class Request:
    filename: str
    mode: str = MODE_OCTET
    opcode: Opcode = Opcode.READ

    def to_bytes(self) -> bytes:
        mode = self.mode or MODE_OCTET
        return (
            _OPCODE.pack(self.opcode)
            + self.filename.encode("utf-8", "surrogateescape")
            + b"\x00"
            + mode.encode("utf-8")
            + b"\x00"
        )

    @staticmethod
    def from_bytes(raw: bytes) -> "Request":
        code = _read_opcode(raw)
        if code not in (Opcode.READ, Opcode.WRITE):
            raise MalformedPacket(f"opcode {code} is not a read/write request")
        # filenames are only logged; keep whatever bytes the client sent
        filename, offset = _read_cstring(raw, _OPCODE.size, "filename", errors="surrogateescape")
        if not filename:
            raise MalformedPacket("empty filename")
        mode, _ = _read_cstring(raw, offset, "mode")
        # anything after the mode terminator is RFC 2347 options, which are not negotiated
        mode = mode.lower()
        if mode != MODE_OCTET:
            raise UnsupportedMode(f"transfer mode {mode!r} is not supported, only {MODE_OCTET!r}")
        return Request(filename=filename, mode=mode, opcode=Opcode(code))


@dataclass(frozen=True, slots=True)
class DataPacket:
    block: int
    payload: bytes = b""

    @property
    def final(self) -> bool:
        return len(self.payload) < BLOCK_SIZE

    def to_bytes(self) -> bytes:
        return _HEADER.pack(Opcode.DATA, self.block) + bytes(self.payload)

    @staticmethod
    def from_bytes(raw: bytes) -> "DataPacket":
        if _read_opcode(raw) != Opcode.DATA:
            raise MalformedPacket("not a DATA packet")
        if len(raw) < _HEADER.size:
            raise MalformedPacket("truncated DATA header")
        if len(raw) > DATAGRAM_SIZE:
            raise MalformedPacket(f"DATA payload exceeds {BLOCK_SIZE} bytes")
        _, block = _HEADER.unpack_from(raw)
        return DataPacket(block=block, payload=raw[_HEADER.size :])


@dataclass(frozen=True, slots=True)
class Acknowledgment:
    block: int

    def to_bytes(self) -> bytes:
        return _HEADER.pack(Opcode.ACK, self.block)

    @staticmethod
    def from_bytes(raw: bytes) -> "Acknowledgment":
        if _read_opcode(raw) != Opcode.ACK:
            raise MalformedPacket("not an ACK packet")
        if len(raw) < _HEADER.size:
            raise MalformedPacket("truncated ACK")
        _, block = _HEADER.unpack_from(raw)
        return Acknowledgment(block=block)


@dataclass(frozen=True, slots=True)
class ErrorPacket:
    code: ErrorCode
    message: str = ""

    def to_bytes(self) -> bytes:
        return _HEADER.pack(Opcode.ERROR, self.code) + self.message.encode("utf-8") + b"\x00"

    @staticmethod
    def from_bytes(raw: bytes) -> "ErrorPacket":
        if _read_opcode(raw) != Opcode.ERROR:
            raise MalformedPacket("not an ERROR packet")
        if len(raw) < _HEADER.size:
            raise MalformedPacket("truncated ERROR header")
        _, code = _HEADER.unpack_from(raw)
        try:
            error_code = ErrorCode(code)
        except ValueError as exc:
            raise MalformedPacket(f"unknown error code {code}") from exc
        # peers do not always terminate the message; take what is there
        text = raw[_HEADER.size :].split(b"\x00", 1)[0]
        return ErrorPacket(code=error_code, message=text.decode("utf-8", errors="replace"))


Packet = Union[Request, DataPacket, Acknowledgment, ErrorPacket]

_DECODERS = {
    Opcode.READ: Request.from_bytes,
    Opcode.WRITE: Request.from_bytes,
    Opcode.DATA: DataPacket.from_bytes,
    Opcode.ACK: Acknowledgment.from_bytes,
    Opcode.ERROR: ErrorPacket.from_bytes,
}


def decode(raw: bytes) -> Packet:
    """Decode any TFTP datagram, dispatching on its leading opcode."""
    code = _read_opcode(raw)
    try:
        decoder = _DECODERS[Opcode(code)]
    except ValueError as exc:
        raise MalformedPacket(f"unknown opcode {code}") from exc
    return decoder(raw)


def decode_request(raw: bytes) -> Request:
    return Request.from_bytes(raw)


class BlockCursor:
    """
    Walks a shared, read-only payload in BLOCK_SIZE chunks.

    The counter starts at 0 so the first block produced is numbered 1; it
    wraps to 0 after 65535. The payload is only ever sliced, never copied
    or modified, so one buffer can back any number of cursors.
    """

    def __init__(self, payload: bytes | memoryview) -> None:
        self._view = memoryview(payload).toreadonly()
        self._offset = 0
        self.block = 0

    def next_block(self) -> DataPacket:
        self.block = (self.block + 1) % (MAX_BLOCK_NUMBER + 1)
        chunk = self._view[self._offset : self._offset + BLOCK_SIZE]
        self._offset += len(chunk)
        return DataPacket(block=self.block, payload=bytes(chunk))
