"""KTP sockets: reliable message delivery over UDP with sliding windows."""

from __future__ import annotations

import errno
import logging
import os
import random
import select
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from ktp.protocol import (
    BUFFER_SIZE,
    HEADER_SIZE,
    MAX_KTP_SOCKETS,
    MESSAGE_SIZE,
    SOCK_KTP,
    BadDescriptorError,
    KTPError,
    KTPHeader,
    NoMessageError,
    NoSpaceError,
    NotBoundError,
    P,
    T,
)

log = logging.getLogger(__name__)

Address = tuple[str, int]


def drop_message(p: float) -> bool:
    """Return True with probability ``p``, simulating a lost datagram."""
    return random.random() < p


def _address(addr) -> Address:
    host, port = addr[0], addr[1]
    return (str(host), int(port))


def _check_type(sock_type: int) -> None:
    if sock_type != SOCK_KTP:
        raise KTPError("socket type must be SOCK_KTP", errno.EINVAL)


@dataclass
class _InFlight:
    seq_num: int
    sent_at: float
    payload: bytes


@dataclass
class KTPSocket:
    """One slot of the socket table and the state of its connection."""

    is_free: bool = True
    pid: int = 0
    udp_socket: socket.socket | None = None
    local_addr: Address | None = None
    remote_addr: Address | None = None
    send_buffer: deque[bytes] = field(default_factory=deque)
    recv_buffer: deque[bytes] = field(default_factory=deque)
    swnd: list[_InFlight] = field(default_factory=list)
    rwnd_size: int = BUFFER_SIZE
    rwnd_seq_nums: deque[int] = field(
        default_factory=lambda: deque(maxlen=BUFFER_SIZE)
    )
    last_ack_seq: int = 0
    nospace_flag: bool = False
    next_seq_num: int = 0


class KTPEngine:
    """Owns the socket table and the receiver and sender workers."""

    def __init__(
        self,
        loss_probability: float = P,
        timeout: float = T,
        max_sockets: int = MAX_KTP_SOCKETS,
    ) -> None:
        self.loss_probability = loss_probability
        self.timeout = timeout
        self.sockets = [KTPSocket() for _ in range(max_sockets)]
        self._lock = threading.RLock()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    def __enter__(self) -> KTPEngine:
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
        with self._lock:
            for sockfd, slot in enumerate(self.sockets):
                if not slot.is_free:
                    self.close(sockfd)

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def start(self) -> None:
        """Start the receiver and sender threads."""
        if self._threads:
            return
        self._stopping.clear()
        self._threads = [
            threading.Thread(target=self._receive_loop, name="ktp-receiver", daemon=True),
            threading.Thread(target=self._send_loop, name="ktp-sender", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop the worker threads and wait for them to finish."""
        self._stopping.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def _receive_loop(self) -> None:
        while not self._stopping.is_set():
            self.receive_pending(self.timeout)

    def _send_loop(self) -> None:
        while not self._stopping.wait(self.timeout / 2):
            self.send_pending()

    def _slot(self, sockfd: int) -> KTPSocket:
        if not 0 <= sockfd < len(self.sockets) or self.sockets[sockfd].is_free:
            raise BadDescriptorError(f"no open KTP socket {sockfd}")
        return self.sockets[sockfd]

    def socket(
        self, domain: int = socket.AF_INET, sock_type: int = SOCK_KTP, protocol: int = 0
    ) -> int:
        """Open a KTP socket and return its descriptor."""
        _check_type(sock_type)
        with self._lock:
            for index, slot in enumerate(self.sockets):
                if slot.is_free:
                    udp = socket.socket(domain, socket.SOCK_DGRAM, protocol)
                    self.sockets[index] = KTPSocket(
                        is_free=False, pid=os.getpid(), udp_socket=udp
                    )
                    return index
        raise NoSpaceError("no free KTP socket")

    def bind(self, sockfd: int, local_addr, remote_addr) -> None:
        """Bind the socket locally and fix the single peer it talks to."""
        with self._lock:
            slot = self._slot(sockfd)
            slot.udp_socket.bind(local_addr)
            slot.local_addr = _address(slot.udp_socket.getsockname())
            slot.remote_addr = _address(remote_addr)

    def sendto(self, sockfd: int, data: bytes, dest_addr) -> int:
        """Queue one message for the bound peer; return the length given."""
        with self._lock:
            slot = self._slot(sockfd)
            if slot.remote_addr is None or _address(dest_addr) != slot.remote_addr:
                raise NotBoundError()
            if len(slot.send_buffer) >= BUFFER_SIZE:
                raise NoSpaceError("send buffer is full")
            slot.send_buffer.append(bytes(data[:MESSAGE_SIZE]).ljust(MESSAGE_SIZE, b"\0"))
        return len(data)

    def recvfrom(self, sockfd: int, bufsize: int = MESSAGE_SIZE) -> tuple[bytes, Address | None]:
        """Take the oldest received message and the peer's address."""
        with self._lock:
            slot = self._slot(sockfd)
            if not slot.recv_buffer:
                raise NoMessageError()
            message = slot.recv_buffer.popleft()
            slot.rwnd_size = BUFFER_SIZE - len(slot.recv_buffer)
            return message[: min(bufsize, MESSAGE_SIZE)], slot.remote_addr

    def close(self, sockfd: int) -> None:
        """Close the socket and free its slot."""
        with self._lock:
            slot = self._slot(sockfd)
            slot.udp_socket.close()
            self.sockets[sockfd] = KTPSocket()

    def collect_garbage(self, pid: int | None = None) -> int | None:
        """Free the first socket owned by ``pid``; return its descriptor, if any."""
        pid = os.getpid() if pid is None else pid
        with self._lock:
            for index, slot in enumerate(self.sockets):
                if not slot.is_free and slot.pid == pid:
                    slot.udp_socket.close()
                    self.sockets[index] = KTPSocket()
                    return index
        return None

    def _transmit(self, slot: KTPSocket, packet: bytes) -> None:
        if slot.remote_addr is None:
            log.warning("socket has no peer; packet not sent")
            return
        try:
            slot.udp_socket.sendto(packet, slot.remote_addr)
        except OSError as exc:
            log.warning("sendto failed: %s", exc)

    def _send_ack(self, slot: KTPSocket, seq_num: int, rwnd_size: int, nospace: bool) -> None:
        self._transmit(slot, KTPHeader(seq_num, rwnd_size, True, nospace).pack())

    def receive_pending(self, timeout: float | None = None) -> int:
        """Wait up to ``timeout`` for datagrams and handle one per ready socket.

        Returns the number of datagrams handled. When nothing arrives, sockets
        that had announced a full buffer and now have room tell their peer so.
        """
        timeout = self.timeout if timeout is None else timeout
        with self._lock:
            active = {
                slot.udp_socket: (index, slot)
                for index, slot in enumerate(self.sockets)
                if not slot.is_free
            }
        if active:
            try:
                ready, _, _ = select.select(list(active), [], [], timeout)
            except (OSError, ValueError):
                return 0
        else:
            self._stopping.wait(timeout)
            ready = []
        if not ready:
            self._announce_space()
            return 0
        handled = 0
        for index, slot in sorted((active[udp] for udp in ready), key=lambda item: item[0]):
            if self._receive_one(index, slot):
                handled += 1
        return handled

    def _receive_one(self, index: int, slot: KTPSocket) -> bool:
        try:
            packet, _ = slot.udp_socket.recvfrom(MESSAGE_SIZE + HEADER_SIZE)
        except OSError as exc:
            log.warning("recvfrom failed: %s", exc)
            return False
        if drop_message(self.loss_probability):
            log.info("Dropping message")
            return False
        try:
            header = KTPHeader.unpack(packet)
        except ValueError:
            log.warning("Ignoring datagram too short for a KTP header")
            return False
        with self._lock:
            if self.sockets[index] is not slot:
                return False
            if header.is_ack:
                self._handle_ack(slot, header)
            else:
                self._handle_data(slot, header, packet[HEADER_SIZE:])
        return True

    def _handle_ack(self, slot: KTPSocket, header: KTPHeader) -> None:
        for position, entry in enumerate(slot.swnd):
            if entry.seq_num == header.seq_num:
                del slot.swnd[position]
                log.info("ACK received for seq %d, swnd size now %d",
                         header.seq_num, len(slot.swnd))
                break
        else:
            log.info("Received ACK for unknown sequence number %d", header.seq_num)
        slot.rwnd_size = header.rwnd_size
        slot.nospace_flag = header.is_nospace

    def _handle_data(self, slot: KTPSocket, header: KTPHeader, payload: bytes) -> None:
        seq_num = header.seq_num
        if len(slot.recv_buffer) < BUFFER_SIZE:
            if seq_num in slot.rwnd_seq_nums:
                log.info("Duplicate packet seq %d ignored", seq_num)
            else:
                slot.recv_buffer.append(payload.ljust(MESSAGE_SIZE, b"\0"))
                slot.rwnd_seq_nums.append(seq_num)
                slot.rwnd_size += 1
                slot.last_ack_seq = seq_num
                log.info("Received packet seq %d, recv_buffer_size now %d",
                         seq_num, len(slot.recv_buffer))
            self._send_ack(slot, seq_num, BUFFER_SIZE - len(slot.recv_buffer), False)
        else:
            slot.nospace_flag = True
            self._send_ack(slot, slot.last_ack_seq, 0, True)
            log.info("No space in receive buffer, sending NOSPACE ACK")

    def _announce_space(self) -> None:
        with self._lock:
            for slot in self.sockets:
                if (not slot.is_free and slot.nospace_flag
                        and len(slot.recv_buffer) < BUFFER_SIZE):
                    slot.nospace_flag = False
                    self._send_ack(slot, slot.last_ack_seq,
                                   BUFFER_SIZE - len(slot.recv_buffer), False)
                    log.info("Space now available in receive buffer, sending ACK")

    def send_pending(self) -> int:
        """Retransmit timed-out packets and send queued ones the window allows.

        Returns the number of datagrams sent.
        """
        sent = 0
        with self._lock:
            now = time.monotonic()
            for slot in self.sockets:
                if slot.is_free:
                    continue
                for entry in slot.swnd:
                    if now - entry.sent_at >= self.timeout:
                        self._transmit(slot, KTPHeader(entry.seq_num).pack() + entry.payload)
                        entry.sent_at = now
                        sent += 1
                        log.info("Retransmitting packet seq %d", entry.seq_num)
                while (len(slot.swnd) < BUFFER_SIZE and slot.send_buffer
                       and slot.rwnd_size > 0):
                    payload = slot.send_buffer.popleft()
                    seq_num = slot.next_seq_num
                    self._transmit(slot, KTPHeader(seq_num).pack() + payload)
                    slot.swnd.append(_InFlight(seq_num, now, payload))
                    slot.rwnd_size -= 1
                    slot.next_seq_num = (seq_num + 1) % 256
                    sent += 1
                    log.info("Sent new packet seq %d, swnd size now %d",
                             seq_num, len(slot.swnd))
        return sent


_engine: KTPEngine | None = None
_engine_lock = threading.Lock()


def get_engine() -> KTPEngine:
    """Return the process-wide engine, starting it on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = KTPEngine()
            _engine.start()
        return _engine


def k_socket(domain: int = socket.AF_INET, sock_type: int = SOCK_KTP, protocol: int = 0) -> int:
    """Open a KTP socket on the process-wide engine."""
    _check_type(sock_type)
    return get_engine().socket(domain, sock_type, protocol)


def k_bind(sockfd: int, local_addr, remote_addr) -> None:
    """Bind a KTP socket of the process-wide engine."""
    get_engine().bind(sockfd, local_addr, remote_addr)


def k_sendto(sockfd: int, data: bytes, dest_addr) -> int:
    """Queue a message on a KTP socket of the process-wide engine."""
    return get_engine().sendto(sockfd, data, dest_addr)


def k_recvfrom(sockfd: int, bufsize: int = MESSAGE_SIZE) -> tuple[bytes, Address | None]:
    """Take a received message from a KTP socket of the process-wide engine."""
    return get_engine().recvfrom(sockfd, bufsize)


def k_close(sockfd: int) -> None:
    """Close a KTP socket of the process-wide engine."""
    get_engine().close(sockfd)