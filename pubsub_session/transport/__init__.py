"""
Transport collaborators: the interface the engine expects and an in-memory
implementation.
"""
from .base import TransportProtocol
from .loopback import Peer, LoopbackTransport, AutoAckPeer

__all__ = [
    "TransportProtocol",
    "Peer",
    "LoopbackTransport",
    "AutoAckPeer",
]
