# src/bavard/core/errors.py
"""Exception taxonomy shared by the BAVARD services.

Services raise these; the API layer translates them into HTTP responses.
"""

from __future__ import annotations


class BavardError(RuntimeError):
    """Base class for all domain failures."""


class TransientIOError(BavardError):
    """Storage or network was unreachable; the operation may be retried with backoff."""


class WriteError(TransientIOError):
    """Persisting a record failed.

    The write may still have been applied when the failure was ambiguous, so
    callers must not assume the record is absent.
    """


class OperationNotPermittedError(BavardError):
    """The caller is not allowed to perform the operation. Never retried."""


class NotFoundError(BavardError):
    """A referenced conversation, message or user does not exist."""


class PartialBatchError(BavardError):
    """A multi-record write was found applied on one side only."""


class InvalidRequestError(BavardError):
    """The request was well-formed but semantically invalid."""
