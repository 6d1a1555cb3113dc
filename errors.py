"""Domain exceptions shared by the pricing and dispatch engines."""


class DispatchError(Exception):
    """Base class for pricing and dispatch failures."""


class DistanceUnavailable(DispatchError):
    """Geocoding or routing could not produce a distance."""


class InvalidTariff(DispatchError):
    """The tenant has no rate table for the requested vehicle class."""


class MalformedLocation(DispatchError, ValueError):
    """A stored location or polygon cannot be parsed."""


class NoCandidateDriver(DispatchError):
    """No FREE driver could take the job in this pass."""


class DriverUnavailable(DispatchError):
    """The driver is no longer FREE (assignment race lost or driver busy)."""


class JobUnavailable(DispatchError):
    """The job is no longer waiting for a driver."""


class InvalidTransition(DispatchError):
    """A job or driver status change is not allowed from the current state."""


class StaleDriverState(DispatchError):
    """An optimistic driver write lost against a concurrent update."""


class RecordNotFound(DispatchError):
    """A job, driver or tenant id does not exist."""
