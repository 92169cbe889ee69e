"""
Error types for the worker fleet provisioner.
"""

from enum import Enum
from typing import Optional

import requests


class ErrorKind(Enum):
    """Classification of a failed provider call."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    FATAL = "fatal"


TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
CONFLICT_STATUS_CODES = {409, 412}


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in CONFLICT_STATUS_CODES:
        return ErrorKind.CONFLICT
    if status_code in TRANSIENT_STATUS_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


class ProviderError(RuntimeError):
    """A compute provider call failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class ConfigurationError(ValueError):
    """Fleet or template configuration is invalid."""


class ProvisioningError(RuntimeError):
    """A planned worker could not be brought up."""


class ProvisioningTimeout(ProvisioningError):
    """A bounded wait during provisioning ran out."""


class ProvisioningCancelled(ProvisioningError):
    """A planned worker was cancelled while waiting."""


def is_transient(error: BaseException) -> bool:
    """
    Decide whether an error is worth retrying.

    Transient provider errors and network-level request failures qualify;
    not-found, conflict and fatal provider errors do not.
    """
    if isinstance(error, ProviderError):
        return error.is_transient
    return isinstance(error, (requests.RequestException, TimeoutError))
