"""
Error taxonomy for the messaging core.

  ValidationError          rejected locally, before any network call
  TransientNetworkError    connect / timeout / read failures (retryable)
  ServerError              the API answered with a failure
  MethodNotSupportedError  HTTP 405: endpoint missing on this deployment

Poll ticks swallow everything; foreground actions surface everything except
MethodNotSupportedError, which is only logged.
"""

from __future__ import annotations


class MessagingError(Exception):
    """Base class for every failure raised by farmline."""

    user_visible = True


class ValidationError(MessagingError):
    """Input rejected before any I/O (empty body, no peer selected)."""


class TransientNetworkError(MessagingError):
    """The request never got a usable answer. Safe to retry."""


# Shorter name used by callers that only care about "offline"
NetworkError = TransientNetworkError


class ServerError(MessagingError):
    """The API answered, but with an error status or success=false."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class MethodNotSupportedError(ServerError):
    """HTTP 405 — a deployment/config mismatch, not something the user can fix."""

    user_visible = False

    def __init__(self, message: str, status_code: int = 405):
        super().__init__(message, status_code)
