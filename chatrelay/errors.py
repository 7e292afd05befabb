"""
Error taxonomy for the chat relay.

- InvalidRequest / NotFound: surfaced to HTTP callers (400 / 404)
- StoreUnavailable: store or registry call failed; 500 for callers,
  batch failure for the change feed
- ConnectionGone / TransientDeliveryError: delivery-local, handled
  inside the fanout engine and never surfaced
"""


class RelayError(Exception):
    """Base class for all relay errors."""

    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class InvalidRequest(RelayError):
    status_code = 400


class NotFound(RelayError):
    status_code = 404


class StoreUnavailable(RelayError):
    status_code = 500


class DeliveryError(RelayError):
    """Base class for failures delivering a frame to one connection."""

    def __init__(self, connection_id: str, detail: str = ""):
        super().__init__(detail or f"delivery to {connection_id} failed")
        self.connection_id = connection_id


class ConnectionGone(DeliveryError):
    """The target connection no longer exists; never retried."""


class TransientDeliveryError(DeliveryError):
    """Timeout, throttling or other recoverable transport failure."""
