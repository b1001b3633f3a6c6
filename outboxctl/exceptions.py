"""
Error taxonomy for the outbound delivery path.

Delivery errors split into two families so the worker can decide whether a
retry could ever help:

    TransientDeliveryError  -> requeued with backoff until attempts run out
    PermanentDeliveryError  -> skipped at once, no retry budget spent
"""


class DeliveryError(Exception):
    """Base class for failures reported by a mail transport."""


class TransientDeliveryError(DeliveryError):
    """
    The provider may accept the message later.

    Examples: connection refused or reset, timeouts, SMTP 4xx replies,
    rate limiting.
    """


class PermanentDeliveryError(DeliveryError):
    """
    Retrying the same message cannot succeed.

    Examples: SMTP 5xx replies, refused recipients, a payload that no longer
    exists.
    """


class IllegalTransition(ValueError):
    """A job state change that the state machine does not allow."""

    def __init__(self, current, new):
        super().__init__(f"Illegal job transition {current} -> {new}")
        self.current = current
        self.new = new


class UnknownTenant(LookupError):
    """A workspace id that does not exist (or no longer exists)."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Unknown tenant {tenant_id!r}")
        self.tenant_id = tenant_id


__all__ = [
    "DeliveryError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "IllegalTransition",
    "UnknownTenant",
]
