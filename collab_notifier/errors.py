"""Error taxonomy for the collaboration and notification engine.

Authorization and persistence failures are hard errors returned to the caller.
Delivery failures are soft: the dispatcher logs them and treats the connection
as unreachable.
"""


class NotifierError(Exception):
    """Base class for engine errors."""


class AuthError(NotifierError):
    """Missing, malformed or rejected credential."""


class AccessDenied(NotifierError):
    """Authenticated, but not authorized for the requested room or entity."""


class NotFound(NotifierError):
    """Entity does not exist or is not visible to the caller."""


class DeliveryFailure(NotifierError):
    """A live connection could not be written to (closed, broken, timed out)."""


class PersistenceFailure(NotifierError):
    """The data store rejected or did not complete a read/write."""
