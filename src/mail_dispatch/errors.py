# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception types raised by the dispatch engine.

Rate-limit deferrals and already-sent jobs are normal outcomes and are
reported through :class:`mail_dispatch.models.DispatchOutcome`, not raised.
"""

from __future__ import annotations

from collections.abc import Sequence


class DispatchError(RuntimeError):
    """Base class for dispatcher errors, carrying a machine-readable ``code``."""

    code = "dispatch_error"


class InvalidInput(DispatchError):
    """Raised when a schedule request is malformed. Nothing is persisted."""

    code = "invalid_input"


class PartialSubmission(DispatchError):
    """Raised when a batch was persisted but not every job reached the queue.

    The persisted rows stay ``QUEUED``; the reconciliation sweep resubmits the
    missing entries later.

    Attributes:
        persisted_ids: Every email id created by the batch.
        missing_ids: Email ids that have no queue entry.
        cause: The queue error that interrupted the submission.
    """

    code = "partial_submission"

    def __init__(self, persisted_ids: Sequence[str], missing_ids: Sequence[str], cause: BaseException | None = None):
        self.persisted_ids = list(persisted_ids)
        self.missing_ids = list(missing_ids)
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"{len(self.missing_ids)} of {len(self.persisted_ids)} jobs were not queued{detail}"
        )


class TransportFailure(DispatchError):
    """Raised by the worker when the transport could not deliver an email.

    Attributes:
        email_id: The email that was not delivered.
        cause: The underlying transport exception.
        permanent: True if retrying cannot succeed (e.g. rejected credentials).
    """

    code = "transport_failure"

    def __init__(self, email_id: str, cause: BaseException, *, permanent: bool = False):
        self.email_id = email_id
        self.cause = cause
        self.permanent = permanent
        super().__init__(f"Delivery of {email_id} failed: {cause}")


class LeaseMismatch(DispatchError):
    """Raised when a queue operation presents a lease that is no longer current."""

    code = "lease_mismatch"
