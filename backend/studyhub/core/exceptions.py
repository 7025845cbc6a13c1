# SPDX-License-Identifier: Apache-2.0
"""Custom exception classes."""
from __future__ import annotations


class StudyHubError(Exception):
    """Base exception for studyhub."""

    code = "INTERNAL_ERROR"
    status_code = 500


class NoPermissionError(StudyHubError):
    """Requester lacks any matching grant."""

    code = "NO_PERMISSION_ERROR"
    status_code = 403


class NotFoundError(StudyHubError):
    """Referenced entry does not exist or is soft-deleted."""

    code = "CLIENT_ACTION_ON_NON_EXISTENT_ENTRY"
    status_code = 404


class MalformedInputError(StudyHubError):
    """Client-supplied shape failed validation."""

    code = "CLIENT_MALFORMED_INPUT"
    status_code = 400


class DatabaseError(StudyHubError):
    """Storage operation was not acknowledged."""

    code = "DATABASE_ERROR"
    status_code = 500
