from .errors import MalformedPacket, NetworkIO, PacketError, PeerError, RetriesExhausted, TftpError, UnsupportedMode
from .packets import Acknowledgment, DataPacket, ErrorCode, ErrorPacket, Opcode, Request, decode
from .session import SessionState, TransferSession
from .tftp_server import TftpServer

__all__ = [
    "Acknowledgment",
    "DataPacket",
    "ErrorCode",
    "ErrorPacket",
    "MalformedPacket",
    "NetworkIO",
    "Opcode",
    "PacketError",
    "PeerError",
    "Request",
    "RetriesExhausted",
    "SessionState",
    "TftpError",
    "TftpServer",
    "TransferSession",
    "UnsupportedMode",
    "decode",
]
