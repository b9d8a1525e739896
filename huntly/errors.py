"""
Exception taxonomy.

crm_server.py maps each class to an HTTP status; anything not listed here
surfaces as a generic 500.
"""


class HuntlyError(Exception):
    """Base class for all expected application errors."""
    status_code = 500


class ConfigError(HuntlyError):
    """Raised when configuration is invalid or incomplete."""
    pass


class ValidationError(HuntlyError):
    """Raised when request fields fail validation."""
    status_code = 400


class NotFoundError(HuntlyError):
    """Raised when a referenced record does not exist."""
    status_code = 404


class ConflictError(HuntlyError):
    """Raised when a unique field is already taken."""
    status_code = 409


class AuthenticationError(HuntlyError):
    """Raised by the login flow when credentials do not match."""
    status_code = 401


class ForbiddenError(HuntlyError):
    """Raised when a valid account is not allowed to sign in."""
    status_code = 403
