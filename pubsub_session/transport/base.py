"""
Transport Collaborator Interface.

The session engine does not frame bytes. A transport owns the physical link
and the codec, and exchanges decoded Packet objects with the engine:

    open(config)       establish the link (no protocol handshake; the engine
                       sends CONNECT itself)
    send(packet)       encode and write one outbound packet
    receive(timeout)   return the next decoded inbound packet, or None if
                       nothing arrived within `timeout`
    close()            tear the link down; must be idempotent

Any failure to open, read or write must be raised as TransportError (or a
subclass). The engine calls send() only from its writer thread and receive()
only from its reader thread, so a transport needs no internal ordering of its
own beyond being safe to use from those two threads at once.

Example Implementation:
    >>> class SocketTransport:
    ...     def open(self, config): ...
    ...     def send(self, packet): self._sock.sendall(codec.encode(packet))
    ...     def receive(self, timeout): return codec.read_packet(self._sock, timeout)
    ...     def close(self): self._sock.close()
"""
from typing import Optional, Protocol, runtime_checkable

from ..core.models import Packet, SessionConfig


@runtime_checkable
class TransportProtocol(Protocol):
    """Structural interface every transport implements."""

    def open(self, config: SessionConfig) -> None:
        ...

    def send(self, packet: Packet) -> None:
        ...

    def receive(self, timeout: Optional[float] = None) -> Optional[Packet]:
        ...

    def close(self) -> None:
        ...


__all__ = ["TransportProtocol"]
