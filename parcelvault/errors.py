"""
Error taxonomy shared by the engine and the HTTP layer.
"""

from __future__ import annotations


class ParcelVaultError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ParcelVaultError):
    """Malformed or missing input, rejected before storage is touched."""

    status_code = 400


class InvalidWeight(ValidationError):
    pass


class InvalidPricingConfig(ValidationError):
    pass


class InvalidTier(InvalidPricingConfig):
    pass


class BackupNotConfiguredError(ValidationError):
    pass


class NotFoundError(ParcelVaultError):
    status_code = 404


class ReferentialError(ParcelVaultError):
    """A reference points at a row owned by another location (or none)."""

    status_code = 409


class PermissionDeniedError(ParcelVaultError):
    status_code = 403


class ExternalServiceError(ParcelVaultError):
    """The blob store was unreachable or rejected the request."""

    status_code = 502


class InvalidApiKeyError(ExternalServiceError):
    status_code = 400

    def __init__(self, message: str = "invalid key"):
        super().__init__(message)
