"""Long-running process that keeps the KTP receiver and sender workers alive."""

from __future__ import annotations

import argparse
import signal
import threading

from ktp.ksocket import KTPEngine
from ktp.protocol import MAX_KTP_SOCKETS, P, T

_TICK = 1.0


def run(engine: KTPEngine, stop_event: threading.Event) -> None:
    """Start ``engine`` and keep it running until ``stop_event`` is set."""
    engine.start()
    try:
        while not stop_event.wait(_TICK):
            pass
    finally:
        engine.stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ktp-daemon",
        description="Run the KTP receiver and sender workers.",
    )
    parser.add_argument(
        "--loss-probability",
        type=float,
        default=P,
        help="probability of dropping an incoming datagram (default: %(default)s)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=T,
        help="retransmission timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--max-sockets",
        type=int,
        default=MAX_KTP_SOCKETS,
        help="size of the socket table (default: %(default)s)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the daemon; SIGTERM frees a socket owned by this process."""
    args = _build_parser().parse_args(argv)
    engine = KTPEngine(
        loss_probability=args.loss_probability,
        timeout=args.timeout,
        max_sockets=args.max_sockets,
    )
    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: engine.collect_garbage())
    try:
        run(engine, stop_event)
    except KeyboardInterrupt:
        stop_event.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())