"""Exceptions raised by the preview protocol."""

from __future__ import annotations


class PreviewError(Exception):
    """Base class for webcam preview errors."""


class CapabilityFailure(PreviewError):
    """Camera or microphone capture could not be acquired."""


class NegotiationFailure(PreviewError):
    """The peer connection engine rejected a description or candidate."""


class RoutingError(PreviewError):
    """A message type has no handler in the receiving context.

    The message type space is closed, so this always indicates a wiring bug.
    """


class DeliveryError(PreviewError):
    """The target context is not registered on the bus or was torn down."""
