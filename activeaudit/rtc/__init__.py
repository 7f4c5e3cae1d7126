"""Peer connection engine and negotiation state."""

__all__ = [
    "engine",
    "negotiation",
]
