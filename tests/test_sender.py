import socket
import threading

import pytest

import ktp.receiver
import ktp.sender
from ktp.ksocket import KTPEngine
from ktp.protocol import MESSAGE_SIZE, NoSpaceError
from ktp.receiver import receive_file
from ktp.sender import TransferStats, main, send_file


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


@pytest.fixture
def fast(monkeypatch):
    monkeypatch.setattr(ktp.sender, "LINGER", 0.5)
    monkeypatch.setattr(ktp.sender, "PACING_DELAY", 0.0)
    monkeypatch.setattr(ktp.sender, "RETRY_DELAY", 0.02)
    monkeypatch.setattr(ktp.receiver, "POLL_DELAY", 0.01)


@pytest.fixture
def engine():
    with KTPEngine(loss_probability=0.0, timeout=0.2) as eng:
        eng.start()
        yield eng


def _transfer(engine, source, target):
    sender_addr = ("127.0.0.1", _free_port())
    receiver_addr = ("127.0.0.1", _free_port())
    outcome = {}

    def receive():
        try:
            outcome["packets"] = receive_file(target, receiver_addr, sender_addr, engine)
        except Exception as exc:  # surfaced through the assertion below
            outcome["error"] = exc

    worker = threading.Thread(target=receive, daemon=True)
    worker.start()
    while not any(slot.local_addr == receiver_addr for slot in engine.sockets):
        if not worker.is_alive():
            break
    stats = send_file(source, sender_addr, receiver_addr, engine)
    worker.join(10)
    assert worker.is_alive() is False
    assert "error" not in outcome
    return stats, outcome["packets"]


def test_average_of_empty_transfer_is_zero():
    assert TransferStats().average == 0.0


def test_average_divides_transmissions_by_messages():
    assert TransferStats(transmissions=6, messages=3).average == 2.0


def test_whole_chunks_round_trip(tmp_path, fast, engine):
    data = b"abcdefgh" * (3 * MESSAGE_SIZE // 8)
    source = tmp_path / "large_file.txt"
    source.write_bytes(data)
    target = tmp_path / "received_file.txt"

    stats, packets = _transfer(engine, source, target)

    assert stats.messages == 3
    assert stats.transmissions == stats.messages
    assert stats.average == 1.0
    assert packets == stats.messages
    assert target.read_bytes() == data
    assert all(slot.is_free for slot in engine.sockets)


def test_partial_last_chunk_is_padded_with_nul(tmp_path, fast, engine):
    data = bytes(range(1, 101)) * 7
    source = tmp_path / "in.bin"
    source.write_bytes(data)
    target = tmp_path / "out.bin"

    stats, packets = _transfer(engine, source, target)

    received = target.read_bytes()
    assert packets == stats.messages
    assert len(received) == stats.messages * MESSAGE_SIZE
    assert received[: len(data)] == data
    assert set(received[len(data):]) == {0}


def test_missing_file_raises_and_frees_socket(tmp_path, fast):
    with KTPEngine(loss_probability=0.0, timeout=0.2) as eng:
        with pytest.raises(FileNotFoundError):
            send_file(
                tmp_path / "absent.txt",
                ("127.0.0.1", _free_port()),
                ("127.0.0.1", _free_port()),
                eng,
            )
        assert all(slot.is_free for slot in eng.sockets)


def test_gives_up_when_send_buffer_stays_full(tmp_path, monkeypatch):
    monkeypatch.setattr(ktp.sender, "MAX_RETRIES", 2)
    monkeypatch.setattr(ktp.sender, "RETRY_DELAY", 0.0)
    monkeypatch.setattr(ktp.sender, "PACING_DELAY", 0.0)
    source = tmp_path / "big.bin"
    source.write_bytes(b"x" * (MESSAGE_SIZE * 11))
    # The engine is never started, so nothing drains the send buffer.
    with KTPEngine(loss_probability=0.0, timeout=0.2) as eng:
        with pytest.raises(NoSpaceError):
            send_file(source, ("127.0.0.1", _free_port()), ("127.0.0.1", _free_port()), eng)
        assert all(slot.is_free for slot in eng.sockets)


def test_main_rejects_malformed_address():
    with pytest.raises(SystemExit) as excinfo:
        main(["file.txt", "--remote", "nonsense"])
    assert excinfo.value.code == 2