# errors.py


class PresenceError(Exception):
    """Base class for presence engine errors."""


class AuthError(PresenceError):
    """No active or valid session for the caller."""

    def __init__(self, message: str, unavailable: bool = False):
        super().__init__(message)
        self.unavailable = unavailable


class StoreError(PresenceError):
    """A backend read or write against the profiles table failed."""


class ProfileConflictError(StoreError):
    """Insert rejected because a profile with the same id already exists."""


class LocationUnavailableError(PresenceError):
    """A coarse-location lookup returned nothing usable."""


class CacheError(PresenceError):
    """A cached entry could not be read or decrypted."""


class SessionNotFoundError(PresenceError):
    """The caller has no open presence session."""
