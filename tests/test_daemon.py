import socket
import threading
import time

import pytest

from ktp.daemon import main, run
from ktp.ksocket import KTPEngine
from ktp.protocol import MESSAGE_SIZE, NoMessageError


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


def _wait_for(predicate, limit=5.0):
    deadline = time.monotonic() + limit
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_run_returns_at_once_when_stop_is_already_set():
    engine = KTPEngine(loss_probability=0.0, timeout=0.1)
    stop = threading.Event()
    stop.set()
    run(engine, stop)
    assert engine.running is False


def test_run_keeps_engine_running_until_stopped():
    engine = KTPEngine(loss_probability=0.0, timeout=0.1)
    stop = threading.Event()
    worker = threading.Thread(target=run, args=(engine, stop), daemon=True)
    worker.start()
    assert _wait_for(lambda: engine.running) is True
    stop.set()
    worker.join(5)
    assert worker.is_alive() is False
    assert engine.running is False


def test_run_drives_message_delivery():
    engine = KTPEngine(loss_probability=0.0, timeout=0.2)
    stop = threading.Event()
    worker = threading.Thread(target=run, args=(engine, stop), daemon=True)
    worker.start()
    try:
        addr_a = ("127.0.0.1", _free_port())
        addr_b = ("127.0.0.1", _free_port())
        a = engine.socket()
        b = engine.socket()
        engine.bind(a, addr_a, addr_b)
        engine.bind(b, addr_b, addr_a)
        engine.sendto(a, b"ping", addr_b)

        received = []

        def poll():
            try:
                received.append(engine.recvfrom(b))
            except NoMessageError:
                return False
            return True

        assert _wait_for(poll) is True
        message, source = received[0]
        assert message == b"ping".ljust(MESSAGE_SIZE, b"\0")
        assert source == addr_a
    finally:
        stop.set()
        worker.join(5)
        for sockfd, slot in enumerate(engine.sockets):
            if not slot.is_free:
                engine.close(sockfd)


def test_main_rejects_bad_option_value():
    with pytest.raises(SystemExit) as excinfo:
        main(["--timeout", "soon"])
    assert excinfo.value.code == 2