"""
Errors raised by the mesh client.

Ghost peers are deliberately absent: the sweep reconciles them silently.
"""


class MeshError(Exception):
    """Base class for mesh client errors."""


class AdmissionDenied(MeshError):
    """The host rejected this client. Terminal; never retried automatically."""


class TransportDrop(MeshError):
    """The relay stayed unreachable after every permitted reconnect attempt."""


class MediaUnavailable(MeshError):
    """A local camera, microphone or screen source could not be opened."""


class StaleNegotiation(MeshError):
    """A negotiation message arrived for a superseded or unknown connection."""


class InvalidTransition(MeshError):
    """A peer session was asked to move to a state its current state forbids."""
