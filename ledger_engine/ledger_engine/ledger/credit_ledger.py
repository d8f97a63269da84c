"""The credit ledger engine.

:class:`CreditLedger` is the only writer of account balances.  Every
operation pairs one conditional balance adjustment with one appended
transaction inside a single store unit, so a balance can always be rebuilt
from its transaction log.

Idempotency rests on the store's unique ``(account_id, external_reference)``
constraint: an operation carrying a reference first looks the reference up
and, if it is already recorded, returns the original receipt marked
``duplicate=True``.  A concurrent writer that wins the race makes the
insert fail with :class:`DuplicateExternalRefError`; the ledger then
re-reads and returns the winner's receipt.

Every public method accepts an optional ``unit`` so that the webhook
reconciler can run several ledger operations and its dedup write in one
atomic unit.  Without a unit the ledger opens its own, bounded by
``timeout_seconds``.  A timeout surfaces as :class:`StoreUnavailableError`
because the write may or may not have been committed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ledger_engine.errors import (
    AccountNotFoundError,
    DuplicateExternalRefError,
    InvalidAmountError,
    LedgerValidationError,
    StoreUnavailableError,
)
from ledger_engine.ledger.models import (
    CREDIT_TYPES,
    AccountKind,
    AccountSnapshot,
    LedgerReport,
    LedgerTransaction,
    NewTransaction,
    Receipt,
    TransactionType,
    TransferReceipt,
)
from ledger_engine.ledger.store import LedgerStore, LedgerUnit

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_PAGE_SIZE = 500


def _require_positive(amount: int, what: str = "amount") -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"{what} must be an integer number of minor units")
    if amount <= 0:
        raise InvalidAmountError(f"{what} must be positive, got {amount}")


def transfer_references(transfer_id: str) -> tuple[str, str]:
    """Return the ``(outgoing, incoming)`` references for a transfer id."""
    return f"transfer:{transfer_id}:out", f"transfer:{transfer_id}:in"


class CreditLedger:
    """Applies debits, credits, transfers, and admin adjustments.

    Parameters
    ----------
    store:
        The backing :class:`LedgerStore`.
    timeout_seconds:
        Upper bound for one self-managed unit of work.  ``None`` disables
        the bound.
    """

    def __init__(self, store: LedgerStore, *, timeout_seconds: float | None = 10.0) -> None:
        self._store = store
        self._timeout = timeout_seconds

    @property
    def store(self) -> LedgerStore:
        return self._store

    # ------------------------------------------------------------------
    # Unit-of-work plumbing
    # ------------------------------------------------------------------

    async def _run(
        self,
        fn: Callable[[LedgerUnit], Awaitable[T]],
        unit: LedgerUnit | None,
    ) -> T:
        if unit is not None:
            return await fn(unit)
        try:
            async with asyncio.timeout(self._timeout):
                async with self._store.atomic() as own_unit:
                    return await fn(own_unit)
        except TimeoutError as exc:
            raise StoreUnavailableError(
                f"Ledger operation did not finish within {self._timeout}s; outcome unknown"
            ) from exc

    async def _run_idempotent(
        self,
        fn: Callable[[LedgerUnit], Awaitable[Receipt]],
        unit: LedgerUnit | None,
        account_id: str,
        reference: str | None,
    ) -> Receipt:
        try:
            return await self._run(fn, unit)
        except DuplicateExternalRefError:
            # Lost an insert race; the caller-owned unit is poisoned, so only
            # a self-managed unit can recover here.
            if unit is not None or reference is None:
                raise
            prior = await self.lookup(account_id, reference)
            if prior is None:
                raise
            logger.info("Reference %s on %s recorded concurrently; returning prior receipt", reference, account_id)
            return prior

    @staticmethod
    async def _prior(unit: LedgerUnit, account_id: str, reference: str | None) -> Receipt | None:
        if reference is None:
            return None
        txn = await unit.lookup_transaction_by_external_ref(reference, account_id=account_id)
        if txn is None:
            return None
        logger.info("Duplicate reference %s on account %s; returning prior receipt", reference, account_id)
        return Receipt.from_transaction(txn, duplicate=True)

    @staticmethod
    async def _require_account(unit: LedgerUnit, account_id: str, *, for_update: bool = False) -> AccountSnapshot:
        account = await unit.get_account(account_id, for_update=for_update)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    @staticmethod
    async def _apply(
        unit: LedgerUnit,
        account_id: str,
        txn_type: TransactionType,
        delta: int,
        *,
        description: str,
        external_reference: str | None,
        metadata: dict[str, Any] | None = None,
        purchased_delta: int = 0,
        expected_version: int | None = None,
    ) -> Receipt:
        account = await unit.atomic_adjust(
            account_id,
            delta,
            min_balance_after=0,
            purchased_delta=purchased_delta,
            expected_version=expected_version,
        )
        txn = await unit.append_transaction(
            NewTransaction(
                account_id=account_id,
                type=txn_type,
                amount=delta,
                balance_after=account.balance,
                description=description,
                external_reference=external_reference,
                metadata=metadata or {},
            )
        )
        logger.info(
            "Ledger %s on %s: amount=%d balance=%d ref=%s",
            txn_type.value,
            account_id,
            delta,
            account.balance,
            external_reference,
        )
        return Receipt.from_transaction(txn)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def open_account(
        self,
        account_id: str,
        kind: AccountKind = AccountKind.PERSONAL,
        *,
        owner_id: str | None = None,
        initial_credits: int = 0,
        unit: LedgerUnit | None = None,
    ) -> AccountSnapshot:
        """Create an account at zero balance.

        ``initial_credits`` are granted as an ``admin_credit`` transaction
        in the same unit, so the account's log accounts for its whole
        balance from the start.
        """
        if initial_credits < 0:
            raise InvalidAmountError("initial_credits must be non-negative")

        async def _op(u: LedgerUnit) -> AccountSnapshot:
            account = await u.create_account(account_id, kind, owner_id=owner_id)
            if initial_credits:
                await self._apply(
                    u,
                    account_id,
                    TransactionType.ADMIN_CREDIT,
                    initial_credits,
                    description="Welcome credits",
                    external_reference=f"welcome:{account_id}",
                )
                account = await self._require_account(u, account_id)
            logger.info("Opened %s account %s", kind.value, account_id)
            return account

        return await self._run(_op, unit)

    async def get_account(self, account_id: str, *, unit: LedgerUnit | None = None) -> AccountSnapshot:
        async def _op(u: LedgerUnit) -> AccountSnapshot:
            return await self._require_account(u, account_id)

        return await self._run(_op, unit)

    async def list_accounts(self) -> list[AccountSnapshot]:
        async def _op(u: LedgerUnit) -> list[AccountSnapshot]:
            return await u.list_accounts()

        return await self._run(_op, None)

    # ------------------------------------------------------------------
    # Debit / credit
    # ------------------------------------------------------------------

    async def debit(
        self,
        account_id: str,
        amount: int,
        *,
        usage_ref: str | None = None,
        description: str = "Usage",
        metadata: dict[str, Any] | None = None,
        unit: LedgerUnit | None = None,
    ) -> Receipt:
        """Charge *amount* minor units of usage.

        Raises
        ------
        InvalidAmountError
            ``amount <= 0``.
        InsufficientBalanceError
            The balance does not cover *amount*; nothing is changed.
        AccountNotFoundError
            Unknown account.
        """
        _require_positive(amount)

        async def _op(u: LedgerUnit) -> Receipt:
            prior = await self._prior(u, account_id, usage_ref)
            if prior is not None:
                return prior
            return await self._apply(
                u,
                account_id,
                TransactionType.USAGE,
                -amount,
                description=description,
                external_reference=usage_ref,
                metadata=metadata,
            )

        return await self._run_idempotent(_op, unit, account_id, usage_ref)

    async def credit(
        self,
        account_id: str,
        amount: int,
        *,
        external_ref: str | None = None,
        txn_type: TransactionType = TransactionType.PURCHASE,
        description: str = "",
        track_purchased: bool = False,
        metadata: dict[str, Any] | None = None,
        unit: LedgerUnit | None = None,
    ) -> Receipt:
        """Add *amount* minor units to an account.

        A repeated call with the same ``external_ref`` is a no-op that
        returns the original receipt.  With ``track_purchased`` the amount
        also counts toward ``purchased_credits``, which survives
        subscription cycle resets.
        """
        _require_positive(amount)
        if txn_type not in CREDIT_TYPES:
            raise LedgerValidationError(f"credit() does not accept transaction type '{txn_type.value}'")

        async def _op(u: LedgerUnit) -> Receipt:
            prior = await self._prior(u, account_id, external_ref)
            if prior is not None:
                return prior
            return await self._apply(
                u,
                account_id,
                txn_type,
                amount,
                description=description or txn_type.value.replace("_", " ").capitalize(),
                external_reference=external_ref,
                metadata=metadata,
                purchased_delta=amount if track_purchased else 0,
            )

        return await self._run_idempotent(_op, unit, account_id, external_ref)

    async def refund(
        self,
        account_id: str,
        amount: int,
        *,
        external_ref: str,
        description: str = "Refund",
        metadata: dict[str, Any] | None = None,
        unit: LedgerUnit | None = None,
    ) -> Receipt:
        """Reverse purchased credits, capped at the current balance.

        Credits already spent cannot be clawed back below zero; the
        transaction records the amount actually removed.
        """
        _require_positive(amount)

        async def _op(u: LedgerUnit) -> Receipt:
            prior = await self._prior(u, account_id, external_ref)
            if prior is not None:
                return prior
            account = await self._require_account(u, account_id, for_update=True)
            applied = min(amount, account.balance)
            return await self._apply(
                u,
                account_id,
                TransactionType.REFUND,
                -applied,
                description=description,
                external_reference=external_ref,
                metadata={**(metadata or {}), "requested": amount},
                purchased_delta=-applied,
                expected_version=account.version,
            )

        return await self._run_idempotent(_op, unit, account_id, external_ref)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: int,
        *,
        transfer_id: str | None = None,
        description: str = "",
        unit: LedgerUnit | None = None,
    ) -> TransferReceipt:
        """Move *amount* between two accounts in one atomic unit.

        Both rows are locked in account-id order so that opposing
        transfers cannot deadlock.  Supplying ``transfer_id`` makes a retry
        after an unknown outcome safe: a transfer whose outgoing leg is
        already recorded returns the recorded pair.
        """
        _require_positive(amount)
        if from_account_id == to_account_id:
            raise LedgerValidationError("Cannot transfer to the same account")
        transfer_id = transfer_id or f"trf-{uuid.uuid4().hex[:16]}"
        out_ref, in_ref = transfer_references(transfer_id)

        async def _op(u: LedgerUnit) -> TransferReceipt:
            prior_out = await self._prior(u, from_account_id, out_ref)
            if prior_out is not None:
                prior_in = await self._prior(u, to_account_id, in_ref)
                if prior_in is None:
                    raise DuplicateExternalRefError(from_account_id, out_ref)
                return TransferReceipt(transfer_id, prior_out, prior_in)

            for account_id in sorted((from_account_id, to_account_id)):
                await self._require_account(u, account_id, for_update=True)

            metadata = {
                "transfer_id": transfer_id,
                "from_account_id": from_account_id,
                "to_account_id": to_account_id,
            }
            out_receipt = await self._apply(
                u,
                from_account_id,
                TransactionType.TRANSFER_OUT,
                -amount,
                description=description or f"Transfer to {to_account_id}",
                external_reference=out_ref,
                metadata=metadata,
            )
            in_receipt = await self._apply(
                u,
                to_account_id,
                TransactionType.TRANSFER_IN,
                amount,
                description=description or f"Transfer from {from_account_id}",
                external_reference=in_ref,
                metadata=metadata,
            )
            return TransferReceipt(transfer_id, out_receipt, in_receipt)

        try:
            return await self._run(_op, unit)
        except DuplicateExternalRefError:
            if unit is not None:
                raise
            recorded = await self.lookup_transfer(transfer_id, from_account_id, to_account_id)
            if recorded is None:
                raise
            return recorded

    async def lookup_transfer(
        self,
        transfer_id: str,
        from_account_id: str,
        to_account_id: str,
    ) -> TransferReceipt | None:
        out_ref, in_ref = transfer_references(transfer_id)
        out_receipt = await self.lookup(from_account_id, out_ref)
        in_receipt = await self.lookup(to_account_id, in_ref)
        if out_receipt is None or in_receipt is None:
            return None
        return TransferReceipt(transfer_id, out_receipt, in_receipt)

    # ------------------------------------------------------------------
    # Admin adjustments
    # ------------------------------------------------------------------

    async def adjust_admin(
        self,
        account_id: str,
        delta: int,
        reason: str,
        actor_id: str,
        *,
        external_ref: str | None = None,
        unit: LedgerUnit | None = None,
    ) -> Receipt:
        """Manual correction by an operator.

        Positive deltas are recorded as ``admin_credit`` without an upper
        bound.  Negative deltas are recorded as ``admin_debit`` and capped
        at the current balance, so the balance never goes negative.
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidAmountError("Admin adjustment must be a non-zero integer number of minor units")
        if not reason.strip():
            raise LedgerValidationError("Admin adjustments require a reason")

        async def _op(u: LedgerUnit) -> Receipt:
            prior = await self._prior(u, account_id, external_ref)
            if prior is not None:
                return prior
            account = await self._require_account(u, account_id, for_update=True)
            applied = delta if delta > 0 else -min(-delta, account.balance)
            new_balance = account.balance + applied
            metadata = {
                "actor_id": actor_id,
                "reason": reason,
                "requested": delta,
                "previous_balance": account.balance,
                "new_balance": new_balance,
            }
            receipt = await self._apply(
                u,
                account_id,
                TransactionType.ADMIN_CREDIT if delta > 0 else TransactionType.ADMIN_DEBIT,
                applied,
                description=reason,
                external_reference=external_ref,
                metadata=metadata,
                expected_version=account.version,
            )
            if applied != delta:
                logger.warning(
                    "Admin debit on %s capped at balance: requested=%d applied=%d actor=%s",
                    account_id,
                    delta,
                    applied,
                    actor_id,
                )
            return receipt

        return await self._run_idempotent(_op, unit, account_id, external_ref)

    # ------------------------------------------------------------------
    # Subscription cycles
    # ------------------------------------------------------------------

    async def apply_subscription_cycle(
        self,
        account_id: str,
        allotment: int,
        *,
        external_ref: str,
        description: str = "Subscription credits",
        metadata: dict[str, Any] | None = None,
        unit: LedgerUnit | None = None,
    ) -> Receipt:
        """Reset the subscription-origin portion of an organization balance.

        With purchased credits ``P`` and balance ``B`` the account ends at
        ``min(P, B) + allotment`` with ``purchased_credits == min(P, B)``.
        The unused subscription portion from the previous period is written
        off as a negative ``subscription_credit`` transaction (reference
        ``<external_ref>:expired``) followed by the new allotment under
        *external_ref*.  A repeated call with the same reference is a no-op.
        """
        if isinstance(allotment, bool) or not isinstance(allotment, int) or allotment < 0:
            raise InvalidAmountError("Subscription allotment must be a non-negative integer")

        async def _op(u: LedgerUnit) -> Receipt:
            prior = await self._prior(u, account_id, external_ref)
            if prior is not None:
                return prior
            account = await self._require_account(u, account_id, for_update=True)
            kept = min(account.purchased_credits, account.balance)
            expired = account.balance - kept
            cycle_metadata = {
                **(metadata or {}),
                "previous_balance": account.balance,
                "purchased_credits": kept,
                "allotment": allotment,
            }
            version = account.version
            if expired > 0:
                await self._apply(
                    u,
                    account_id,
                    TransactionType.SUBSCRIPTION_CREDIT,
                    -expired,
                    description="Unused subscription credits expired",
                    external_reference=f"{external_ref}:expired",
                    metadata=cycle_metadata,
                    purchased_delta=kept - account.purchased_credits,
                    expected_version=version,
                )
                version += 1
            return await self._apply(
                u,
                account_id,
                TransactionType.SUBSCRIPTION_CREDIT,
                allotment,
                description=description,
                external_reference=external_ref,
                metadata=cycle_metadata,
                expected_version=version,
            )

        return await self._run_idempotent(_op, unit, account_id, external_ref)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lookup(
        self,
        account_id: str,
        reference: str,
        *,
        unit: LedgerUnit | None = None,
    ) -> Receipt | None:
        """Find the receipt recorded under *reference*, if any.

        This is the check-before-retry read for callers whose previous
        attempt ended with an unknown outcome.
        """

        async def _op(u: LedgerUnit) -> Receipt | None:
            txn = await u.lookup_transaction_by_external_ref(reference, account_id=account_id)
            return Receipt.from_transaction(txn, duplicate=True) if txn is not None else None

        return await self._run(_op, unit)

    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        unit: LedgerUnit | None = None,
    ) -> list[LedgerTransaction]:
        """Return one page of the account's history, newest first."""
        if limit < 1 or limit > _MAX_PAGE_SIZE:
            raise LedgerValidationError(f"limit must be between 1 and {_MAX_PAGE_SIZE}")
        if offset < 0:
            raise LedgerValidationError("offset must be non-negative")

        async def _op(u: LedgerUnit) -> list[LedgerTransaction]:
            await self._require_account(u, account_id)
            return await u.list_transactions(account_id, limit=limit, offset=offset)

        return await self._run(_op, unit)

    async def verify(self, account_id: str, *, unit: LedgerUnit | None = None) -> LedgerReport:
        """Recompute ``balance == sum(transactions)`` for one account."""

        async def _op(u: LedgerUnit) -> LedgerReport:
            account = await self._require_account(u, account_id)
            total, count = await u.summarize_transactions(account_id)
            return LedgerReport(
                account_id=account_id,
                balance=account.balance,
                purchased_credits=account.purchased_credits,
                transactions_total=total,
                transaction_count=count,
            )

        report = await self._run(_op, unit)
        if not report.consistent:
            logger.error(
                "Ledger inconsistency on %s: balance=%d transactions_total=%d purchased=%d",
                account_id,
                report.balance,
                report.transactions_total,
                report.purchased_credits,
            )
        return report
