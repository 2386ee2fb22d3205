import socket
import struct
import threading

import pytest

from tftpServer import TftpServer


def _make_rrq(filename: str, mode: str = "octet", opcode: int = 1) -> bytes:
    return struct.pack("!H", opcode) + filename.encode("utf-8") + b"\x00" + mode.encode("utf-8") + b"\x00"


def _ack(block: int) -> bytes:
    return struct.pack("!HH", 4, block)


def _download(port: int, filename: str = "boot.img") -> tuple[bytes, int, int]:
    """Fetch the payload; returns (content, block count, server transfer port)."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    content = b""
    blocks = 0
    tid = None
    try:
        sock.sendto(_make_rrq(filename), ("127.0.0.1", port))
        while True:
            data, addr = sock.recvfrom(1024)
            opcode, block = struct.unpack("!HH", data[:4])
            assert opcode == 3
            assert block == blocks + 1
            tid = tid or addr
            assert addr == tid
            content += data[4:]
            blocks += 1
            sock.sendto(_ack(block), addr)
            if len(data) - 4 < 512:
                break
    finally:
        sock.close()
    return content, blocks, tid[1]


@pytest.fixture
def server_factory():
    servers = []

    def _make(payload: bytes, **kwargs) -> TftpServer:
        srv = TftpServer(payload, host="127.0.0.1", port=0, **kwargs)
        srv.start()
        servers.append(srv)
        return srv

    yield _make
    for srv in servers:
        srv.stop()


@pytest.mark.parametrize("length", [0, 512, 600, 3000])
def test_tftp_rrq_downloads_payload(server_factory, length: int):
    payload = bytes((i * 7) % 251 for i in range(length))
    server = server_factory(payload)
    content, blocks, tid_port = _download(server.sock_port)
    assert content == payload
    assert blocks == length // 512 + 1
    # transfer runs on its own endpoint, not the well-known one
    assert tid_port != server.sock_port


def test_filename_is_irrelevant(server_factory):
    server = server_factory(b"same bytes for everyone")
    assert _download(server.sock_port, "a.bin")[0] == _download(server.sock_port, "dir/other.img")[0]


def test_garbage_gets_error_and_listener_keeps_serving(server_factory):
    server = server_factory(b"abcdefgh" * 100)
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    try:
        sock.sendto(b"\x13\x37\x42", ("127.0.0.1", server.sock_port))
        data, addr = sock.recvfrom(1024)
        assert data == b"\x00\x05\x00\x04\x00"
        assert addr[1] == server.sock_port

        sock.sendto(_make_rrq("boot.img"), ("127.0.0.1", server.sock_port))
        data, _ = sock.recvfrom(1024)
        opcode, block = struct.unpack("!HH", data[:4])
        assert (opcode, block) == (3, 1)
    finally:
        sock.close()


def test_write_request_is_refused(server_factory):
    server = server_factory(b"x")
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    try:
        sock.sendto(_make_rrq("upload.bin", opcode=2), ("127.0.0.1", server.sock_port))
        data, _ = sock.recvfrom(1024)
        opcode, code = struct.unpack("!HH", data[:4])
        assert (opcode, code) == (5, 2)
    finally:
        sock.close()


def test_unacknowledged_block_is_retransmitted_then_abandoned(server_factory):
    server = server_factory(b"Z" * 100, retries=3, timeout=0.2)
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(1.0)
    try:
        sock.sendto(_make_rrq("boot.img"), ("127.0.0.1", server.sock_port))
        copies = [sock.recvfrom(1024)[0] for _ in range(3)]
        assert all(c == copies[0] for c in copies)
        assert struct.unpack("!HH", copies[0][:4]) == (3, 1)
        with pytest.raises(socket.timeout):
            sock.recvfrom(1024)
    finally:
        sock.close()


def test_duplicate_ack_triggers_resend(server_factory):
    payload = b"Q" * 600
    server = server_factory(payload, timeout=2.0)
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    try:
        sock.sendto(_make_rrq("boot.img"), ("127.0.0.1", server.sock_port))
        first, tid = sock.recvfrom(1024)
        sock.sendto(_ack(1), tid)
        second, _ = sock.recvfrom(1024)
        assert struct.unpack("!HH", second[:4]) == (3, 2)
        sock.sendto(_ack(1), tid)  # stale
        again, _ = sock.recvfrom(1024)
        assert again == second
        sock.sendto(_ack(2), tid)
    finally:
        sock.close()


def test_concurrent_clients_are_served_independently(server_factory):
    payload = bytes(range(256)) * 9
    server = server_factory(payload)
    results = {}

    def _client(idx: int) -> None:
        results[idx] = _download(server.sock_port)

    threads = [threading.Thread(target=_client, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)
    assert len(results) == 4
    assert all(r[0] == payload for r in results.values())


def test_non_utf8_filename_is_served(server_factory):
    server = server_factory(b"latin-1 clients welcome")
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    try:
        sock.sendto(b"\x00\x01caf\xe9.bin\x00octet\x00", ("127.0.0.1", server.sock_port))
        data, tid = sock.recvfrom(1024)
        assert struct.unpack("!HH", data[:4]) == (3, 1)
        assert data[4:] == b"latin-1 clients welcome"
        sock.sendto(_ack(1), tid)
    finally:
        sock.close()


def test_serve_forever_runs_until_stopped():
    payload = b"F" * 700
    server = TftpServer(payload, host="127.0.0.1", port=0)
    server.bind()
    thr = threading.Thread(target=server.serve_forever, daemon=True)
    thr.start()
    try:
        content, blocks, _ = _download(server.sock_port)
        assert content == payload
        assert blocks == 2
    finally:
        server.stop()
    thr.join(timeout=3.0)
    assert not thr.is_alive()
