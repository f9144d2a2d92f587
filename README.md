# ktp

`ktp` provides KTP sockets. These deliver messages over UDP with
acknowledgements and retransmission.

- Every message is a fixed 512 bytes (`MESSAGE_SIZE`). Shorter data is padded
  with NUL bytes. Longer data is cut to 512 bytes.
- Every data packet carries a 4-byte header (`KTPHeader`). The header holds a
  sequence number from 0 to 255, the advertised window, an ACK flag and a
  "no space" flag.
- A socket holds at most 10 messages (`BUFFER_SIZE`) in each of these:
  - the send buffer,
  - the window of unacknowledged packets,
  - the receive buffer.
- Every accepted data packet is acknowledged.
- A packet whose sequence number is among the last 10 accepted is a duplicate.
  It is acknowledged again but not stored.
- Unacknowledged packets are retransmitted once the timeout has passed. The
  timeout is `T`, 5 seconds by default.
- A receiver whose buffer is full answers with a "no space" acknowledgement.
  When nothing arrives within the timeout and room has been freed, it sends a
  fresh acknowledgement.
- Loss is simulated on receipt. Each incoming datagram is dropped with a set
  probability, 5% by default (`P`). Retransmission can be seen at work.

## Installation

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## Library use

A `ktp.ksocket.KTPEngine` owns a table of sockets. Once started, it runs two
daemon threads:

- The first waits for datagrams. It stores data, sends acknowledgements and
  processes acknowledgements.
- Every half timeout, the second retransmits expired packets. It then sends
  queued messages while the send window and the peer's advertised window allow.

```python
import socket

from ktp.ksocket import KTPEngine
from ktp.protocol import SOCK_KTP, NoMessageError, NoSpaceError

with KTPEngine(loss_probability=0.05, timeout=5, max_sockets=100) as engine:
    engine.start()
    fd = engine.socket(socket.AF_INET, SOCK_KTP, 0)
    engine.bind(fd, ("127.0.0.1", 6001), ("127.0.0.1", 6000))

    try:
        engine.sendto(fd, b"hello", ("127.0.0.1", 6000))
    except NoSpaceError:
        pass  # the send buffer is full; try again later

    try:
        data, source = engine.recvfrom(fd, 512)
    except NoMessageError:
        pass  # nothing has arrived yet
```

Leaving the `with` block stops the threads and closes every open socket.

### Engine methods

- `socket(domain, sock_type, protocol)` returns a descriptor, which is an index
  into the table. `sock_type` must be `SOCK_KTP` (10). Any other type raises
  `KTPError` with `EINVAL`.
- `bind(sockfd, local_addr, remote_addr)` binds the UDP socket. It also fixes
  the one peer the socket talks to.
- `sendto(sockfd, data, dest_addr)` queues a message and returns `len(data)`.
  `dest_addr` must be the bound peer.
- `recvfrom(sockfd, bufsize)` returns the oldest received message, at most
  `bufsize` bytes, and the peer's address.
- `close(sockfd)` closes the socket and frees its slot.
- `collect_garbage(pid)` frees the first open socket owned by `pid`. The
  default is the current process. It returns that socket's descriptor, or
  `None`.
- `receive_pending(timeout)` and `send_pending()` each do one round of the
  receiver's or the sender's work. Each returns how many datagrams it handled or
  sent. They can be called directly, without `start()`.

### Errors

Errors are raised as subclasses of `ktp.protocol.KTPError`, which is an
`OSError`:

| Error | Raised when |
| --- | --- |
| `NoSpaceError` | no free slot is left, or the send buffer is full |
| `NotBoundError` | the destination is not the bound peer |
| `NoMessageError` | nothing is waiting to be read |
| `BadDescriptorError` | the socket is unknown or closed |

### Module functions

`k_socket`, `k_bind`, `k_sendto`, `k_recvfrom` and `k_close` work on one engine
for the whole process. `get_engine()` returns that engine and starts it on first
use.

`drop_message(p)` returns `True` with probability `p`.

The engine reports its activity through the `logging` module, under the logger
`ktp.ksocket`. This covers packets sent, retransmitted, dropped and
acknowledged.

## Command-line tools

### Receiving a file

Start the receiver first:

```
ktp-receive [FILE] [--local HOST:PORT] [--remote HOST:PORT]
```

- It listens on `--local`, which defaults to 127.0.0.1:6000.
- It accepts messages from `--remote`, which defaults to 127.0.0.1:6001.
- It writes each message to `FILE`, which defaults to `received_file.txt`. It
  stops at the end-of-file marker.
- Every message is written in full, 512 bytes. The last piece of the file is
  therefore followed by NUL padding.
- When it finishes, it prints how many packets it wrote.

### Sending a file

Then start the sender:

```
ktp-send [FILE] [--local HOST:PORT] [--remote HOST:PORT]
```

- It binds `--local`, which defaults to 127.0.0.1:6001.
- It sends `FILE`, which defaults to `large_file.txt`, to `--remote`, which
  defaults to 127.0.0.1:6000.
- The file goes in 512-byte messages, followed by the marker `##########`.
- When the send buffer is full, it retries a message up to 100 times, 0.1 s
  apart, before it gives up.
- After the marker it waits 5 seconds so that queued packets can still go out.
  It then prints the transfer counts.

The counts cover messages queued by the sender. Retransmissions made by the
engine are not included, so the average is 1.00 whenever anything was sent.

### Running the engine alone

```
ktp-daemon [--loss-probability P] [--timeout SECONDS] [--max-sockets N]
```

This runs an engine's worker threads until it is interrupted (Ctrl-C).

SIGTERM does not stop the daemon. It frees one socket owned by the daemon's own
process.

## What this package does not do

The socket table belongs to the process that creates the engine. Sockets are
not shared between processes. As a result:

- `ktp-daemon` does not serve sockets for other programs. `ktp-send` and
  `ktp-receive` each run their own engine in their own process.
- Delivery to the application follows arrival order. Messages are not reordered
  by sequence number.