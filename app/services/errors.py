# file: services/errors.py


class ValidationError(Exception):
    """A required input was missing or malformed."""


class ReferentialError(Exception):
    """A write referenced a row that does not exist (e.g. an unknown user)."""


class NotFoundError(Exception):
    """The requested record does not exist."""


class TransientTransportError(Exception):
    """A push provider call failed in a way that may succeed on a later attempt."""


class PermanentDestinationError(Exception):
    """A push provider reported the destination token as no longer valid."""


class InvalidImageError(ValueError):
    """A photo payload was not a base64 image data URL."""
