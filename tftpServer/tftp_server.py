from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Tuple

from .errors import PacketError
from .packets import DATAGRAM_SIZE, ErrorCode, ErrorPacket, Opcode, Request, decode_request
from .session import DEFAULT_RETRIES, DEFAULT_TIMEOUT, TransferSession

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 69


class TftpServer:
    """
    Read-only TFTP server handing one in-memory payload to every client.

    Each accepted read request gets its own TransferSession running in a
    daemon thread on a fresh socket connected to the client. The number of
    concurrent sessions is not capped.
    """

    def __init__(
        self,
        payload: bytes,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        retries: int = DEFAULT_RETRIES,
        timeout: float = DEFAULT_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        # sessions only ever get read-only views of this buffer
        self.payload = bytes(payload)
        self.host = host
        self.port = port
        self.retries = retries
        self.timeout = timeout
        self.logger = logger or LOG
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._view = memoryview(self.payload)
        self.sock_port: Optional[int] = None

    def bind(self) -> socket.socket:
        if self._sock:
            return self._sock
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        # bounded receive so the loop can notice stop()
        sock.settimeout(1.0)
        self._sock = sock
        self.sock_port = sock.getsockname()[1]
        self._stop_event.clear()
        self.logger.info("TFTP server serving %d bytes on %s:%d", len(self.payload), self.host, self.sock_port)
        return sock

    def start(self) -> None:
        if self._thread:
            return
        sock = self.bind()
        thr = threading.Thread(target=self._serve_loop, args=(sock,), name="tftp-listener", daemon=True)
        self._thread = thr
        thr.start()

    def serve_forever(self) -> None:
        """Run the receive loop in the calling thread until stop() is called."""
        self._serve_loop(self.bind())

    def stop(self) -> None:
        self._stop_event.set()
        if self._sock:
            try:
                # send dummy packet to unblock recvfrom
                wake_host = "127.0.0.1" if self.host in ("", "0.0.0.0") else self.host
                try:
                    self._sock.sendto(b"", (wake_host, self.sock_port or self.port))
                except OSError:
                    pass
                self._sock.close()
            except Exception:
                self.logger.exception("Error closing TFTP socket")
            self._sock = None
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        self.sock_port = None

    def _serve_loop(self, sock: socket.socket) -> None:
        while not self._stop_event.is_set():
            try:
                data, addr = sock.recvfrom(DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except OSError:
                if self._stop_event.is_set():
                    break
                # e.g. ICMP port unreachable left over from an earlier reply
                self.logger.debug("Ignoring receive error on TFTP socket", exc_info=True)
                continue
            if self._stop_event.is_set():
                break
            self._handle_request(data, addr)

    def _handle_request(self, data: bytes, addr: Tuple[str, int]) -> Optional[threading.Thread]:
        try:
            request = decode_request(data)
        except PacketError as exc:
            self.logger.warning("Invalid request from %s:%d: %s", addr[0], addr[1], exc)
            self._send_error(self._sock, addr, ErrorCode.ILLEGAL_OPERATION, "")
            return None
        if request.opcode is Opcode.WRITE:
            self.logger.warning("Rejected write request from %s:%d for %s", addr[0], addr[1], request.filename)
            self._send_error(self._sock, addr, ErrorCode.ACCESS_VIOLATION, "server is read-only")
            return None
        self.logger.info("TFTP RRQ from %s:%d -> %s (%s)", addr[0], addr[1], request.filename, request.mode)
        return self._spawn_session(request, addr)

    def _spawn_session(self, request: Request, addr: Tuple[str, int]) -> Optional[threading.Thread]:
        # Transfer using a per-transfer socket (client expects data from a new ephemeral port)
        tx = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            tx.connect(addr)
        except OSError:
            self.logger.exception("Could not open transfer socket to %s:%d", addr[0], addr[1])
            tx.close()
            return None
        session = TransferSession(
            tx,
            addr,
            self._view,
            request=request,
            retries=self.retries,
            timeout=self.timeout,
            logger=self.logger,
        )
        thr = threading.Thread(target=session.run, name="tftp-session-%s:%d" % (addr[0], addr[1]), daemon=True)
        thr.start()
        return thr

    def _send_error(self, sock: Optional[socket.socket], addr: Tuple[str, int], code: ErrorCode, message: str) -> None:
        if not sock:
            return
        try:
            sock.sendto(ErrorPacket(code, message).to_bytes(), addr)
        except OSError:
            self.logger.exception("Failed to send TFTP error to %s:%d", addr[0], addr[1])
