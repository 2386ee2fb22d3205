from __future__ import annotations

import enum
import logging
import socket
from typing import Optional, Tuple

from .errors import MalformedPacket, NetworkIO, PacketError, PeerError, RetriesExhausted, TftpError
from .packets import DATAGRAM_SIZE, Acknowledgment, BlockCursor, ErrorPacket, Request, decode

LOG = logging.getLogger(__name__)

DEFAULT_RETRIES = 10
DEFAULT_TIMEOUT = 5.0


class SessionState(enum.Enum):
    SEND_BLOCK = "send_block"
    AWAIT_ACK = "await_ack"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ABORTED})


class TransferSession:
    """
    Lock-step transfer of the shared payload to a single client.

    The session owns ``sock``, which must already be connected to the
    client, and closes it when the transfer reaches COMPLETED or ABORTED.
    Every transmission of a block, the first one included, consumes one
    attempt of the ``retries`` budget.
    """

    def __init__(
        self,
        sock: socket.socket,
        client_addr: Tuple[str, int],
        payload: bytes | memoryview,
        request: Optional[Request] = None,
        retries: int = DEFAULT_RETRIES,
        timeout: float = DEFAULT_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.sock = sock
        self.client_addr = client_addr
        self.request = request
        self.retries = retries
        self.timeout = timeout
        self.logger = logger or LOG
        self.state = SessionState.SEND_BLOCK
        self.error: Optional[TftpError] = None
        self.attempts_left = 0
        self.blocks_sent = 0
        self.retransmits = 0
        self.timeouts = 0
        self._cursor = BlockCursor(payload)
        self._datagram = b""
        self._final = False

    @property
    def block(self) -> int:
        return self._cursor.block

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def run(self) -> SessionState:
        peer = "%s:%d" % (self.client_addr[0], self.client_addr[1])
        try:
            while not self.finished:
                try:
                    if self.state is SessionState.SEND_BLOCK:
                        self._send_block()
                    else:
                        self._await_ack()
                except TftpError as exc:
                    self.error = exc
                    self.state = SessionState.ABORTED
                    self.logger.warning("[%s] transfer aborted: %s", peer, exc)
        except Exception:
            self.state = SessionState.ABORTED
            self.logger.exception("[%s] unexpected error during transfer", peer)
        finally:
            self.close()
        if self.state is SessionState.COMPLETED:
            name = self.request.filename if self.request else "payload"
            self.logger.info(
                "[%s] completed transfer of %s: %d blocks, %d retransmits", peer, name, self.blocks_sent, self.retransmits
            )
        return self.state

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            self.logger.exception("Error closing session socket for %s:%d", self.client_addr[0], self.client_addr[1])

    def _send_block(self) -> None:
        packet = self._cursor.next_block()
        self._datagram = packet.to_bytes()
        self._final = packet.final
        self.attempts_left = self.retries
        self._transmit()
        self.blocks_sent += 1
        self.state = SessionState.AWAIT_ACK

    def _transmit(self) -> None:
        self.attempts_left -= 1
        try:
            self.sock.send(self._datagram)
        except OSError as exc:
            raise NetworkIO(f"sending block {self.block}: {exc}", exc) from exc

    def _retry(self) -> None:
        if self.attempts_left <= 0:
            raise RetriesExhausted(self.block, self.retries)
        self.retransmits += 1
        self._transmit()

    def _await_ack(self) -> None:
        self.sock.settimeout(self.timeout)
        try:
            raw = self.sock.recv(DATAGRAM_SIZE)
        except socket.timeout:
            self.timeouts += 1
            self._retry()
            return
        except OSError as exc:
            raise NetworkIO(f"waiting for ACK of block {self.block}: {exc}", exc) from exc

        try:
            reply = decode(raw)
        except PacketError as exc:
            raise MalformedPacket(f"undecodable reply to block {self.block}: {exc}") from exc

        if isinstance(reply, Acknowledgment):
            if reply.block != self.block:
                # duplicate or out-of-order ack counts as a lost reply
                self.logger.debug("ACK %d while waiting for %d from %s", reply.block, self.block, self.client_addr)
                self._retry()
            elif self._final:
                self.state = SessionState.COMPLETED
            else:
                self.state = SessionState.SEND_BLOCK
        elif isinstance(reply, ErrorPacket):
            raise PeerError(reply.code, reply.message)
        else:
            raise MalformedPacket(f"unexpected {type(reply).__name__} while waiting for ACK of block {self.block}")

