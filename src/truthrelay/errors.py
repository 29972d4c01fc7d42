"""Exception hierarchy for truthrelay.

Every error raised by an adapter is one of these kinds. They are absorbed at
the component boundary where they occur and reported through the
:class:`~truthrelay.relay.governor.ErrorRateGovernor`; none of them is allowed
to terminate the process.
"""


class RelayError(Exception):
    """Base class for all truthrelay errors."""


class StoreUnavailable(RelayError):
    """The durable watermark store cannot be reached."""


class UpstreamUnavailable(RelayError):
    """Fetching candidates from the upstream source failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigMissing(RelayError):
    """A credential or setting required for an operation is absent."""


class SinkDeliveryFailed(RelayError):
    """A single notification could not be delivered."""
