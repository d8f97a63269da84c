"""The storage contract the ledger core depends on.

A :class:`LedgerStore` hands out atomic units of work.  Everything done
through one :class:`LedgerUnit` commits together or not at all, which is
what keeps ``balance == sum(transactions)`` true even across crashes.

Guarantees implementations must provide:

* :meth:`LedgerUnit.atomic_adjust` is linearizable per account.  A lost
  update is never possible, whether the store uses row locks, a version
  compare-and-swap, or serializable transactions.
* :meth:`LedgerUnit.append_transaction` rejects a second transaction with
  the same ``(account_id, external_reference)`` by raising
  :class:`~ledger_engine.errors.DuplicateExternalRefError`.
* :meth:`LedgerUnit.record_webhook_event` inserts at most once per
  provider event id across all concurrent units.
* Reads inside a unit see that unit's own writes.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from ledger_engine.ledger.models import AccountKind, AccountSnapshot, LedgerTransaction, NewTransaction
from ledger_engine.subscriptions.models import SubscriptionAuditEvent, SubscriptionRecord


class LedgerUnit(Protocol):
    """Operations available inside one atomic unit of work."""

    # -- accounts -----------------------------------------------------------

    async def create_account(
        self,
        account_id: str,
        kind: AccountKind,
        *,
        owner_id: str | None = None,
    ) -> AccountSnapshot: ...

    async def get_account(self, account_id: str, *, for_update: bool = False) -> AccountSnapshot | None: ...

    async def list_accounts(self) -> list[AccountSnapshot]: ...

    async def atomic_adjust(
        self,
        account_id: str,
        delta: int,
        *,
        min_balance_after: int = 0,
        purchased_delta: int = 0,
        expected_version: int | None = None,
    ) -> AccountSnapshot:
        """Apply ``balance += delta`` if the result stays at or above the floor.

        ``purchased_credits`` becomes ``purchased_credits + purchased_delta``
        clamped to ``[0, new_balance]``.

        Raises
        ------
        AccountNotFoundError
            The account does not exist.
        InsufficientBalanceError
            ``balance + delta < min_balance_after``; nothing is changed.
        ConcurrentUpdateError
            ``expected_version`` was given and no longer matches.
        """
        ...

    # -- transaction log ----------------------------------------------------

    async def append_transaction(self, entry: NewTransaction) -> LedgerTransaction: ...

    async def lookup_transaction_by_external_ref(
        self,
        external_reference: str,
        *,
        account_id: str | None = None,
    ) -> LedgerTransaction | None: ...

    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerTransaction]: ...

    async def summarize_transactions(self, account_id: str) -> tuple[int, int]:
        """Return ``(sum_of_amounts, transaction_count)`` for *account_id*."""
        ...

    # -- webhook dedup ------------------------------------------------------

    async def record_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        *,
        outcome: str = "processing",
        detail: str | None = None,
    ) -> bool:
        """Insert the dedup row; ``False`` if the event id is already recorded."""
        ...

    async def set_webhook_outcome(self, provider_event_id: str, outcome: str, detail: str | None = None) -> None: ...

    async def get_webhook_event(self, provider_event_id: str) -> dict[str, Any] | None: ...

    # -- subscriptions ------------------------------------------------------

    async def get_subscription(self, provider_subscription_id: str) -> SubscriptionRecord | None: ...

    async def get_current_subscription(self, organization_id: str) -> SubscriptionRecord | None: ...

    async def save_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord: ...

    async def append_subscription_event(self, event: SubscriptionAuditEvent) -> None: ...

    async def list_subscription_events(self, organization_id: str) -> list[SubscriptionAuditEvent]: ...


class LedgerStore(Protocol):
    """Factory for atomic units of work."""

    def atomic(self) -> AbstractAsyncContextManager[LedgerUnit]:
        """Open a unit that commits on clean exit and rolls back on error."""
        ...
