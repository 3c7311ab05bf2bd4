from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for failures raised by the billing and reminder engine."""


class LockContention(BillingError):
    """Another worker holds the lock. Callers count this as skipped."""

    def __init__(self, key: str) -> None:
        super().__init__(f"lock held: {key}")
        self.key = key


class LockBackendUnavailable(BillingError):
    pass


class MissingPrerequisite(BillingError):
    """Authorization code, bank details or another input is missing.

    Never retried automatically; the item is skipped until the data is fixed.
    """

    def __init__(self, subject_id: str, missing: str) -> None:
        super().__init__(f"{subject_id}: missing {missing}")
        self.subject_id = subject_id
        self.missing = missing


class ProcessorError(BillingError):
    """The payment processor rejected or failed a charge/transfer call."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, reference: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reference = reference


class PostSuccessWriteFailure(BillingError):
    """The charge succeeded at the processor but a later local step failed.

    The charge is never rolled back; the failure becomes a reconciliation alert.
    """

    def __init__(self, subscription_id: str, step: str, cause: BaseException) -> None:
        super().__init__(f"{subscription_id}: {step} failed after successful charge: {cause}")
        self.subscription_id = subscription_id
        self.step = step
        self.cause = cause


class PreferenceOptOut(BillingError):
    """Recipient opted out of this reminder. Expected; not an error outcome."""


class NotificationError(BillingError):
    """A channel (email/SMS/push) failed to deliver."""


class UnknownPayout(BillingError):
    """A transfer event names a payout the ledger has no row for (yet)."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"no payout recorded for {reference}")
        self.reference = reference
