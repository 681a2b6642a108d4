"""Error taxonomy for cast session orchestration."""


class CastError(Exception):
    """Base class for orchestration errors."""


class InvalidInput(CastError):
    """Request data is malformed."""


class SessionNotFound(CastError):
    """No session exists for the given id."""


class SessionConflict(CastError):
    """A conditional update found the session in an unexpected status."""


class InvalidTransition(CastError):
    """A status change does not follow the session state machine."""


class StoreError(CastError):
    """The session store could not persist or load a record."""


class ProvisioningTimeout(CastError):
    """The renderer did not start streaming within the provisioning budget."""


class RendererError(CastError):
    """Base class for renderer fleet failures."""


class CapacityExceeded(RendererError):
    """The renderer fleet is at its concurrent-session limit."""


class InvalidTarget(RendererError):
    """The renderer rejected the game URL."""


class RendererUnreachable(RendererError):
    """A renderer call could not complete."""


class RendererTimeout(RendererUnreachable):
    """A renderer call exceeded its time budget."""


class LeaseHeld(CastError):
    """Another live workflow holds the lease on the session."""
