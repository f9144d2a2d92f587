"""Send a file to a peer over a KTP socket."""

from __future__ import annotations

import argparse
import logging
import socket
import sys
import time
from dataclasses import dataclass
from functools import partial

from ktp.ksocket import KTPEngine, get_engine
from ktp.protocol import MESSAGE_SIZE, SOCK_KTP, KTPError, NoSpaceError

log = logging.getLogger(__name__)

EOF_MARKER = b"##########\0"
MAX_RETRIES = 100
RETRY_DELAY = 0.1
PACING_DELAY = 0.01
LINGER = 5.0


@dataclass
class TransferStats:
    """Counts of a finished transfer."""

    transmissions: int = 0
    messages: int = 0

    @property
    def average(self) -> float:
        """Transmissions per message, or 0.0 when nothing was sent."""
        return self.transmissions / self.messages if self.messages else 0.0


def _send_with_retries(engine: KTPEngine, sockfd: int, data: bytes, remote_addr) -> int:
    for _ in range(MAX_RETRIES):
        try:
            return engine.sendto(sockfd, data, remote_addr)
        except NoSpaceError:
            time.sleep(RETRY_DELAY)
    raise NoSpaceError("failed to send after multiple retries")


def _send_marker(engine: KTPEngine, sockfd: int, remote_addr) -> None:
    while True:
        try:
            engine.sendto(sockfd, EOF_MARKER, remote_addr)
            return
        except NoSpaceError:
            time.sleep(RETRY_DELAY)


def send_file(path, local_addr, remote_addr, engine: KTPEngine | None = None) -> TransferStats:
    """Send the file at ``path`` in MESSAGE_SIZE chunks, then an end marker."""
    if engine is None:
        engine = get_engine()
    sockfd = engine.socket(socket.AF_INET, SOCK_KTP, 0)
    try:
        engine.bind(sockfd, local_addr, remote_addr)
        stats = TransferStats()
        with open(path, "rb") as source:
            for chunk in iter(partial(source.read, MESSAGE_SIZE), b""):
                _send_with_retries(engine, sockfd, chunk, remote_addr)
                stats.transmissions += 1
                stats.messages += 1
                time.sleep(PACING_DELAY)
            _send_marker(engine, sockfd, remote_addr)
            time.sleep(LINGER)
        return stats
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
    parser = argparse.ArgumentParser(prog="ktp-send", description="Send a file over KTP.")
    parser.add_argument("file", nargs="?", default="large_file.txt")
    parser.add_argument("--local", type=_parse_address, default=("127.0.0.1", 6001))
    parser.add_argument("--remote", type=_parse_address, default=("127.0.0.1", 6000))
    return parser


def main(argv: list[str] | None = None) -> int:
    """Send a file and print the transfer counts."""
    args = _build_parser().parse_args(argv)
    print("Sending file...")
    try:
        stats = send_file(args.file, args.local, args.remote)
    except (KTPError, OSError) as exc:
        print(f"ktp-send: {exc}", file=sys.stderr)
        return 1
    print(f"Total transmissions: {stats.transmissions}")
    print(f"Total messages: {stats.messages}")
    print(f"Average transmissions per message: {stats.average:.2f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())