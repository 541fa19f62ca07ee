# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the tell relay."""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for every error raised by the relay."""

    code = "relay_error"


class ConfigError(RelayError):
    """Raised when the configuration file or environment is invalid."""

    code = "invalid_configuration"


class BrokerError(RelayError):
    """Raised when a call to the remote broker fails.

    Wraps connection errors, timeouts and non-2xx responses so callers only
    need to handle one exception type.
    """

    code = "broker_error"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class AttachmentError(RelayError):
    """Raised when an attachment cannot be validated, downloaded or staged."""

    code = "attachment_error"


class AttachmentTooLargeError(AttachmentError):
    """Raised when an attachment exceeds the download size cap."""

    code = "attachment_too_large"


class DispatchError(RelayError):
    """Raised when a consumer could not process an inbound message."""

    code = "dispatch_error"


class SessionPathError(DispatchError):
    """Raised when the host rejects the session key of a dispatch request.

    The dispatch gateway reacts to this error by retrying through the
    sibling process session API.
    """

    code = "session_path"
