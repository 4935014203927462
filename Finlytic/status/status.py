"""Status codes and the exceptions that carry them.

Every failure the services raise is a :class:`BaseStatusException` subclass
bound to one :class:`Status`. The user-facing text for each status lives in
:data:`STATUS_MESSAGE`; :class:`Finlytic.status.errors.ErrorHandlingService`
maps the exception classes onto error types and severities.
"""
import enum
import logging
from typing import Dict, Optional


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote store status
    RemoteStoreUnavailable = enum.auto()
    RemoteWriteFailed = enum.auto()

    # Local cache status
    CacheInvalid = enum.auto()

    # Entity status
    ValidationFailed = enum.auto()
    EntityNotFound = enum.auto()
    DefaultCategoryProtected = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings seem to be incomplete, or contain invalid values.',

    Status.CredsNotFound: 'Could not find the credentials. Have you set a valid credentials file in the settings?',
    Status.CredsInvalid: 'Could not verify the credentials. Please check the credentials file.',
    Status.NotAuthenticated: 'Authentication error. Could not refresh the credentials.',

    Status.RemoteStoreUnavailable: 'The remote store is unavailable. Please check your connection.',
    Status.RemoteWriteFailed: 'Could not write to the remote store.',

    Status.CacheInvalid: 'The local cache is invalid. Try fetching the data from the remote store again.',

    Status.ValidationFailed: 'The record contains invalid values.',
    Status.EntityNotFound: 'The record could not be found.',
    Status.DefaultCategoryProtected: 'Cannot delete default category.',
}


def get_message(status: Status) -> str:
    """Return the user-facing text of ``status``."""
    return STATUS_MESSAGE.get(status, STATUS_MESSAGE[Status.UnknownStatus])


class BaseStatusException(Exception):
    """Root of the Finlytic exception hierarchy.

    The string form of the exception is the status text followed by the
    optional detail message.

    Attributes:
        status (Status): The status this exception class stands for.
        status_message (str): Text of ``status``.
        message (str): The detail message, or ``status_message`` when none was given.
    """
    status = Status.UnknownStatus

    def __init__(self, message: Optional[str] = None):
        self.status_message = get_message(self.status)
        self.message = message or self.status_message

        text = self.status_message if not message else f'{self.status_message} {message}'
        super().__init__(text)
        logging.error(text)


class SettingsNotFoundException(BaseStatusException):
    """Raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class CredsNotFoundException(BaseStatusException):
    """Raised when the Google credentials file cannot be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Raised when the Google credentials are invalid or malformed."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Raised when the credentials could not be refreshed."""
    status = Status.NotAuthenticated


class RemoteStoreException(BaseStatusException):
    """Raised when the remote document store cannot be reached or rejects a request."""
    status = Status.RemoteStoreUnavailable


class RemoteWriteException(RemoteStoreException):
    """Raised when an entity mutation could not be written to the remote store."""
    status = Status.RemoteWriteFailed


class CacheInvalidException(BaseStatusException):
    """Raised when the local cache is invalid or corrupted."""
    status = Status.CacheInvalid


class ValidationException(BaseStatusException):
    """Raised when a record fails field validation.

    Attributes:
        field (str): Name of the offending field, if known.
    """
    status = Status.ValidationFailed

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class EntityNotFoundException(BaseStatusException):
    """Raised when a record cannot be found."""
    status = Status.EntityNotFound


class DefaultCategoryException(BaseStatusException):
    """Raised when attempting to delete a default category."""
    status = Status.DefaultCategoryProtected
