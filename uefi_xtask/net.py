"""A UDP echo service that reverses the payloads it receives."""

from __future__ import annotations

import socket
import threading

DEFAULT_PORT = 21572


def reverse_payload(packet: bytes) -> bytes:
    """Reverse the payload of a packet whose first byte is the payload length."""
    if not packet:
        raise ValueError("empty packet")
    if packet[0] != len(packet) - 1:
        raise ValueError(
            f"payload length mismatch: header says {packet[0]}, got {len(packet) - 1}"
        )
    return packet[:1] + packet[:0:-1]


class EchoService:
    """A background thread answering each UDP packet with its payload reversed."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._stop_requested = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @classmethod
    def start(cls, host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> EchoService:
        """Bind the socket and start serving."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
            # Lets the loop check periodically whether a stop was requested.
            sock.settimeout(0.1)
        except OSError:
            sock.close()
            raise
        return cls(sock)

    @property
    def address(self) -> tuple[str, int]:
        return self._sock.getsockname()

    def stop(self) -> None:
        """Request that the service stop."""
        self._stop_requested.set()

    def close(self) -> None:
        """Stop the service and wait for its thread to finish."""
        self.stop()
        self._thread.join()
        self._sock.close()

    def __enter__(self) -> EchoService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _serve(self) -> None:
        while not self._stop_requested.is_set():
            try:
                packet, addr = self._sock.recvfrom(257)
            except OSError:
                continue
            try:
                reply = reverse_payload(packet)
            except ValueError:
                continue
            self._sock.sendto(reply, addr)