"""Receive a file from a peer over a KTP socket."""

from __future__ import annotations

import argparse
import logging
import socket
import sys
import time

from ktp.ksocket import KTPEngine, get_engine
from ktp.protocol import MESSAGE_SIZE, SOCK_KTP, KTPError, NoMessageError

log = logging.getLogger(__name__)

END_MARKER = b"##########"
POLL_DELAY = 0.05


def _is_end_marker(message: bytes) -> bool:
    return len(message) >= len(END_MARKER) and message.split(b"\0", 1)[0] == END_MARKER


def receive_file(path, local_addr, remote_addr, engine: KTPEngine | None = None) -> int:
    """Write received messages to ``path`` until the end marker; return the count."""
    if engine is None:
        engine = get_engine()
    sockfd = engine.socket(socket.AF_INET, SOCK_KTP, 0)
    try:
        engine.bind(sockfd, local_addr, remote_addr)
        total = 0
        with open(path, "wb") as sink:
            while True:
                try:
                    message, _ = engine.recvfrom(sockfd, MESSAGE_SIZE)
                except NoMessageError:
                    time.sleep(POLL_DELAY)
                    continue
                if _is_end_marker(message):
                    log.info("End of file marker received")
                    break
                sink.write(message)
                sink.flush()
                total += 1
                if total % 10 == 0:
                    log.info("Received %d packets so far", total)
        return total
    finally:
        engine.close(sockfd)


def _parse_address(text: str) -> tuple[str, int]:
    host, sep, port = text.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {text!r}")
    try:
        return host, int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"bad port in {text!r}") from None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ktp-receive", description="Receive a file over KTP.")
    parser.add_argument("file", nargs="?", default="received_file.txt")
    parser.add_argument("--local", type=_parse_address, default=("127.0.0.1", 6000))
    parser.add_argument("--remote", type=_parse_address, default=("127.0.0.1", 6001))
    return parser


def main(argv: list[str] | None = None) -> int:
    """Receive a file and report how many packets arrived."""
    args = _build_parser().parse_args(argv)
    print("Waiting to receive file...")
    try:
        total = receive_file(args.file, args.local, args.remote)
    except (KTPError, OSError) as exc:
        print(f"ktp-receive: {exc}", file=sys.stderr)
        return 1
    print(f"File transfer complete. Received {total} packets.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())