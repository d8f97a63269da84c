"""Exception hierarchy for ledger, pricing, and reconciliation failures.

Every error raised by the engine derives from :class:`LedgerError` so that
callers at a boundary (HTTP handlers, the CLI) can map the whole family in
one place.  The subclasses fall into four groups:

* caller-visible business outcomes (:class:`InsufficientBalanceError`),
* idempotency signals that resolve to a prior result
  (:class:`DuplicateExternalRefError`),
* permanent input or reference errors (:class:`ReferencedEntityMissingError`
  and friends, :class:`UnknownModelError`, :class:`SignatureInvalidError`),
* transient infrastructure errors with an unknown outcome
  (:class:`StoreUnavailableError`).
"""

from __future__ import annotations

from ledger_engine.money import format_amount


class LedgerError(Exception):
    """Base class for all credit-ledger errors."""


class InsufficientBalanceError(LedgerError):
    """Raised when an adjustment would take an account below its floor.

    No state is mutated when this is raised.  It is a billing block for the
    caller, never retried automatically.
    """

    def __init__(self, account_id: str, requested: int, available: int) -> None:
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance on account '{account_id}': "
            f"{format_amount(requested, 5)} requested, {format_amount(available, 5)} available"
        )


class DuplicateExternalRefError(LedgerError):
    """Raised by a store when an external reference is already recorded.

    :class:`~ledger_engine.ledger.credit_ledger.CreditLedger` resolves this
    into the previously recorded receipt; it only escapes the ledger when
    the prior transaction cannot be found.
    """

    def __init__(self, account_id: str, external_reference: str) -> None:
        self.account_id = account_id
        self.external_reference = external_reference
        super().__init__(f"Transaction with reference '{external_reference}' already exists for account '{account_id}'")


class SignatureInvalidError(LedgerError):
    """Raised when a webhook payload fails signature verification."""


class UnknownModelError(LedgerError):
    """Raised when usage references a model missing from the pricing table."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"No active pricing for model '{model_id}'")


class StoreUnavailableError(LedgerError):
    """Transient store failure or timeout.

    The outcome of the interrupted operation is unknown: it may or may not
    have been committed.  Callers must look the operation up by its
    reference before retrying.
    """

    outcome_unknown = True


class ConcurrentUpdateError(StoreUnavailableError):
    """An optimistic version check lost a race with another writer."""

    outcome_unknown = False


class ReferencedEntityMissingError(LedgerError):
    """Permanent error: an entity the operation depends on does not exist."""


class AccountNotFoundError(ReferencedEntityMissingError):
    """Raised when an account id does not resolve to an account."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account '{account_id}' not found")


class MalformedEventError(ReferencedEntityMissingError):
    """Raised when a webhook payload lacks the fields its event type requires."""


class AccountExistsError(LedgerError):
    """Raised when opening an account whose id is already taken."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account '{account_id}' already exists")


class LedgerValidationError(LedgerError, ValueError):
    """Raised when an operation's arguments are invalid."""


class InvalidAmountError(LedgerValidationError):
    """Raised for zero, negative, or otherwise unusable amounts."""


class InvalidTransitionError(LedgerError):
    """Raised when a subscription event would make an illegal status change."""

    def __init__(self, subscription_id: str, current: str, target: str) -> None:
        self.subscription_id = subscription_id
        self.current = current
        self.target = target
        super().__init__(f"Subscription '{subscription_id}' cannot move from '{current}' to '{target}'")
