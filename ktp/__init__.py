"""KTP sockets: acknowledged, windowed message delivery with retransmission over UDP."""

__version__ = "0.1.0"
__all__ = ["protocol", "ksocket", "daemon", "sender", "receiver"]