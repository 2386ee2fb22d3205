from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .session import DEFAULT_RETRIES, DEFAULT_TIMEOUT
from .tftp_server import DEFAULT_PORT, TftpServer

LOG = logging.getLogger("tftpServer.cli")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tftp-payload-server", description="Serve a single file read-only over TFTP")
    p.add_argument("-host", "--host", default="0.0.0.0", help="Host/interface to bind")
    p.add_argument("-port", "--port", type=int, default=DEFAULT_PORT, help="TFTP port (0 for ephemeral)")
    p.add_argument("-file", "--file", required=True, help="Path of the file served to every client")
    p.add_argument("--retries", type=int, default=DEFAULT_RETRIES, help="Transmissions per block before giving up")
    p.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Seconds to wait for each ACK")
    p.add_argument("--log-level", default="INFO", help="Logging level")
    return p


def load_payload(path: str | Path) -> bytes:
    return Path(path).read_bytes()


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.retries < 1:
        LOG.error("--retries must be at least 1")
        return 2

    try:
        payload = load_payload(args.file)
    except OSError as exc:
        LOG.error("cannot read payload file %s: %s", args.file, exc)
        return 2

    server = TftpServer(payload, host=args.host, port=args.port, retries=args.retries, timeout=args.timeout, logger=LOG)

    # graceful shutdown handling
    stop_requested = False

    def _on_signal(signum, frame):
        nonlocal stop_requested
        LOG.info("Received signal %s, stopping...", signum)
        stop_requested = True

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        server.start()
        LOG.info("Serving %s on port %s", args.file, server.sock_port)
        # wait until signal
        while not stop_requested:
            signal.pause()
    except KeyboardInterrupt:
        LOG.info("Keyboard interrupt received, stopping server")
    except Exception:
        LOG.exception("Server failed")
        try:
            server.stop()
        except Exception:
            LOG.exception("Error during stop")
        return 1
    finally:
        server.stop()
        LOG.info("Server stopped")

    return 0


if __name__ == "__main__":
    sys.exit(main())
