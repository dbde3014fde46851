"""Modbus TCP transport: MBAP framing and a threaded multi-client server."""

from __future__ import annotations

import ipaddress
import socket
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .protocol import Callbacks, handle_request

__all__ = ["MBAPHeader", "handle_frame", "ModbusTCPServer"]

MBAP_HEADER_LENGTH = 7
MBAP_UNIT_ID_LENGTH = 1
RECV_BUFFER_SIZE = 64
CONNECTION_INTERVAL = 0.010

KEEPALIVE_IDLE_SECONDS = 60
KEEPALIVE_INTERVAL_SECONDS = 10
KEEPALIVE_RETRY_COUNT = 5

_ACCEPT_POLL_SECONDS = 0.2
_JOIN_TIMEOUT_SECONDS = 2.0


@dataclass
class MBAPHeader:
    """The Modbus Application Protocol header that precedes every TCP PDU."""

    transaction_id: int = 0
    protocol_id: int = 0
    length: int = 0
    unit_id: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "MBAPHeader":
        """Decode the first seven bytes of ``data``."""
        if len(data) < MBAP_HEADER_LENGTH:
            raise ValueError(
                f"MBAP header needs {MBAP_HEADER_LENGTH} bytes, got {len(data)}"
            )
        return cls(
            transaction_id=int.from_bytes(data[0:2], "big"),
            protocol_id=int.from_bytes(data[2:4], "big"),
            length=int.from_bytes(data[4:6], "big"),
            unit_id=data[6],
        )

    def to_bytes(self) -> bytes:
        """Encode the header as seven wire bytes."""
        return (
            (self.transaction_id & 0xFFFF).to_bytes(2, "big")
            + (self.protocol_id & 0xFFFF).to_bytes(2, "big")
            + (self.length & 0xFFFF).to_bytes(2, "big")
            + bytes((self.unit_id & 0xFF,))
        )


def handle_frame(data: bytes, callbacks: Callbacks) -> Optional[bytes]:
    """Answer one Modbus TCP frame.

    Returns the complete response frame, or ``None`` when the frame is too
    short to hold a header and a function code.
    """
    data = bytes(data)
    if len(data) < MBAP_HEADER_LENGTH + 1:
        return None
    header = MBAPHeader.from_bytes(data)
    pdu = handle_request(data[MBAP_HEADER_LENGTH:], callbacks)
    header.length = len(pdu) + MBAP_UNIT_ID_LENGTH
    return header.to_bytes() + pdu


def _configure_keepalive(sock: socket.socket) -> None:
    options = [
        (socket.SOL_SOCKET, getattr(socket, "SO_KEEPALIVE", None), 1),
        (socket.IPPROTO_TCP, getattr(socket, "TCP_KEEPIDLE", None), KEEPALIVE_IDLE_SECONDS),
        (socket.IPPROTO_TCP, getattr(socket, "TCP_KEEPINTVL", None), KEEPALIVE_INTERVAL_SECONDS),
        (socket.IPPROTO_TCP, getattr(socket, "TCP_KEEPCNT", None), KEEPALIVE_RETRY_COUNT),
    ]
    for level, option, value in options:
        if option is None:
            continue
        try:
            sock.setsockopt(level, option, value)
        except OSError:
            pass


class ModbusTCPServer:
    """A Modbus TCP server serving a bounded number of clients, one thread each."""

    def __init__(self, host: str, port: int, max_clients: int, callbacks: Callbacks) -> None:
        if not 1 <= max_clients <= 0xFF:
            raise ValueError(f"max_clients must be between 1 and 255, got {max_clients}")
        ipaddress.IPv4Address(host)
        self.callbacks = callbacks
        self.max_clients = max_clients
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._listener.bind((host, port))
            self._listener.listen(max_clients)
        except OSError:
            self._listener.close()
            raise
        self.server_address: Tuple[str, int] = self._listener.getsockname()
        self._slots: List[Optional[socket.socket]] = [None] * max_clients
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def _claim_slot(self, client: socket.socket) -> Optional[int]:
        with self._lock:
            for index, occupant in enumerate(self._slots):
                if occupant is None:
                    self._slots[index] = client
                    return index
        return None

    def _release_slot(self, index: int) -> None:
        with self._lock:
            self._slots[index] = None

    def _serve_client(self, client: socket.socket, slot: int) -> None:
        try:
            while not self._stop.is_set():
                try:
                    data = client.recv(RECV_BUFFER_SIZE)
                except OSError:
                    break
                if not data:
                    break
                response = handle_frame(data, self.callbacks)
                if response is not None:
                    try:
                        client.sendall(response)
                    except OSError:
                        break
                time.sleep(CONNECTION_INTERVAL)
        finally:
            client.close()
            self._release_slot(slot)

    def serve_forever(self) -> None:
        """Accept and serve clients until :meth:`shutdown` is called."""
        self._listener.settimeout(_ACCEPT_POLL_SECONDS)
        try:
            while not self._stop.is_set():
                try:
                    client, _ = self._listener.accept()
                except TimeoutError:
                    continue
                except OSError:
                    if self._stop.is_set():
                        break
                    continue
                client.settimeout(None)
                slot = self._claim_slot(client)
                if slot is None:
                    client.close()
                    continue
                _configure_keepalive(client)
                thread = threading.Thread(
                    target=self._serve_client,
                    args=(client, slot),
                    name="modbcon",
                    daemon=True,
                )
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
                thread.start()
                time.sleep(CONNECTION_INTERVAL)
        finally:
            self._listener.close()

    def shutdown(self) -> None:
        """Stop accepting clients and close every open connection."""
        self._stop.set()
        with self._lock:
            clients = [sock for sock in self._slots if sock is not None]
        for sock in clients:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        self._listener.close()
        for thread in list(self._threads):
            thread.join(_JOIN_TIMEOUT_SECONDS)