"""Usage charging: price a model call and debit the paying account."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from ledger_engine.ledger.credit_ledger import CreditLedger
from ledger_engine.ledger.models import Receipt
from ledger_engine.metering.events import UsageEvent
from ledger_engine.pricing.catalog import PricingCatalog
from ledger_engine.pricing.models import BilledCost
from ledger_engine.retry import RetryConfig, retry_unknown_outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChargeResult:
    """Outcome of charging one usage event.

    ``receipt`` is ``None`` for calls that priced to zero (no tokens).
    """

    usage_ref: str
    cost: BilledCost
    receipt: Receipt | None

    @property
    def duplicate(self) -> bool:
        return self.receipt is not None and self.receipt.duplicate


class UsageCharger:
    """Prices usage events and applies them as ledger debits.

    Pricing happens before any ledger access, so an unknown model rejects
    the call without touching the balance.  Transient store failures are
    retried with backoff, but every retry first looks the usage reference
    up: a debit that timed out may already be committed.

    Parameters
    ----------
    catalog:
        Source of the current pricing table.
    ledger:
        The credit ledger to debit.
    retry_config:
        Backoff parameters for :class:`StoreUnavailableError`.
    """

    def __init__(
        self,
        catalog: PricingCatalog,
        ledger: CreditLedger,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._retry = retry_config or RetryConfig()

    async def estimate(
        self,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
        *,
        markup_multiplier: Decimal | None = None,
    ) -> BilledCost:
        resolver = await self._catalog.resolver()
        return resolver.resolve(model_id, input_tokens, output_tokens, markup_multiplier=markup_multiplier)

    async def charge(self, event: UsageEvent, *, markup_multiplier: Decimal | None = None) -> ChargeResult:
        """Price *event* and debit its account.

        Raises
        ------
        UnknownModelError
            No active pricing for ``event.model_id``; nothing was debited.
        InsufficientBalanceError
            The account cannot cover the cost; the caller must block usage.
        StoreUnavailableError
            Retries were exhausted; the outcome is still unknown.
        """
        cost = await self.estimate(
            event.model_id,
            event.input_tokens,
            event.output_tokens,
            markup_multiplier=markup_multiplier,
        )
        if cost.billed_minor == 0:
            return ChargeResult(usage_ref=event.usage_ref, cost=cost, receipt=None)

        async def _debit() -> Receipt:
            return await self._ledger.debit(
                event.account_id,
                cost.billed_minor,
                usage_ref=event.usage_ref,
                description=f"Usage: {event.model_id}",
                metadata={
                    **event.metadata,
                    "model_id": event.model_id,
                    "input_tokens": event.input_tokens,
                    "output_tokens": event.output_tokens,
                    "base_cost": str(cost.base_cost),
                    "markup_multiplier": str(cost.markup_multiplier),
                },
            )

        async def _lookup() -> Receipt | None:
            return await self._ledger.lookup(event.account_id, event.usage_ref)

        receipt = await retry_unknown_outcome(_debit, _lookup, self._retry, reference=event.usage_ref)
        return ChargeResult(usage_ref=event.usage_ref, cost=cost, receipt=receipt)
