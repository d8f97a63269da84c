"""Unit tests for usage charging."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from ledger_engine.errors import InsufficientBalanceError, StoreUnavailableError, UnknownModelError
from ledger_engine.metering.charger import UsageCharger
from ledger_engine.metering.events import UsageEvent
from ledger_engine.pricing.catalog import PricingCatalog
from ledger_engine.retry import RetryConfig

EUR = 100_000


@pytest.fixture
def catalog(pricing_models) -> PricingCatalog:
    return PricingCatalog(AsyncMock(return_value=pricing_models), default_markup=Decimal("1.5"))


@pytest.fixture
def charger(catalog, memory_ledger) -> UsageCharger:
    return UsageCharger(catalog, memory_ledger, RetryConfig(max_retries=2, base_delay=0.001, jitter=False))


def _event(**overrides) -> UsageEvent:
    fields = {
        "accountId": "user-1",
        "modelId": "gpt-4o-mini",
        "inputTokens": 1_000_000,
        "outputTokens": 1_000_000,
        "usageRef": "turn-1",
    }
    fields.update(overrides)
    return UsageEvent(**fields)


class TestUsageEvent:
    def test_camel_case_and_snake_case(self):
        camel = _event()
        snake = UsageEvent(account_id="user-1", model_id="m", input_tokens=1, output_tokens=2)

        assert camel.account_id == "user-1"
        assert snake.usage_ref.startswith("use-")

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            _event(inputTokens=-1)


class TestCharge:
    @pytest.mark.asyncio
    async def test_charges_billed_cost(self, charger, memory_ledger):
        await memory_ledger.open_account("user-1", initial_credits=5 * EUR)

        result = await charger.charge(_event())

        # (0.15 + 0.60) * 1.5 = 1.125
        assert result.cost.billed_minor == 112_500
        assert result.receipt.amount == -112_500
        assert result.receipt.balance_after == 5 * EUR - 112_500
        txn = (await memory_ledger.list_transactions("user-1"))[0]
        assert txn.metadata["model_id"] == "gpt-4o-mini"
        assert txn.metadata["markup_multiplier"] == "1.5"

    @pytest.mark.asyncio
    async def test_same_usage_ref_charged_once(self, charger, memory_ledger):
        await memory_ledger.open_account("user-1", initial_credits=5 * EUR)

        await charger.charge(_event())
        again = await charger.charge(_event())

        assert again.duplicate is True
        assert (await memory_ledger.get_account("user-1")).balance == 5 * EUR - 112_500

    @pytest.mark.asyncio
    async def test_unknown_model_touches_nothing(self, charger, memory_ledger):
        await memory_ledger.open_account("user-1", initial_credits=EUR)

        with pytest.raises(UnknownModelError):
            await charger.charge(_event(modelId="no-such-model"))

        assert len(await memory_ledger.list_transactions("user-1")) == 1
        assert (await memory_ledger.get_account("user-1")).balance == EUR

    @pytest.mark.asyncio
    async def test_insufficient_balance_propagates(self, charger, memory_ledger):
        await memory_ledger.open_account("user-1", initial_credits=EUR)

        with pytest.raises(InsufficientBalanceError):
            await charger.charge(_event())

    @pytest.mark.asyncio
    async def test_zero_tokens_is_free(self, charger, memory_ledger):
        await memory_ledger.open_account("user-1")

        result = await charger.charge(_event(inputTokens=0, outputTokens=0))

        assert result.receipt is None
        assert result.cost.billed_minor == 0


class TestRetry:
    @pytest.mark.asyncio
    async def test_timed_out_debit_that_committed_is_not_repeated(self, charger, memory_ledger, monkeypatch):
        await memory_ledger.open_account("user-1", initial_credits=5 * EUR)
        real_debit = memory_ledger.debit
        calls = 0

        async def _debit_then_lose_reply(*args, **kwargs):
            nonlocal calls
            calls += 1
            await real_debit(*args, **kwargs)
            raise StoreUnavailableError("connection dropped after commit")

        monkeypatch.setattr(memory_ledger, "debit", _debit_then_lose_reply)

        result = await charger.charge(_event())

        assert calls == 1
        assert result.receipt.amount == -112_500
        assert (await memory_ledger.get_account("user-1")).balance == 5 * EUR - 112_500

    @pytest.mark.asyncio
    async def test_failed_debit_is_retried(self, charger, memory_ledger, monkeypatch):
        await memory_ledger.open_account("user-1", initial_credits=5 * EUR)
        real_debit = memory_ledger.debit
        calls = 0

        async def _fail_first(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreUnavailableError("pool exhausted")
            return await real_debit(*args, **kwargs)

        monkeypatch.setattr(memory_ledger, "debit", _fail_first)

        result = await charger.charge(_event())

        assert calls == 2
        assert result.receipt.duplicate is False

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, charger, memory_ledger, monkeypatch):
        await memory_ledger.open_account("user-1", initial_credits=5 * EUR)
        monkeypatch.setattr(memory_ledger, "debit", AsyncMock(side_effect=StoreUnavailableError("down")))

        with pytest.raises(StoreUnavailableError):
            await charger.charge(_event())


class TestEstimate:
    @pytest.mark.asyncio
    async def test_estimate_with_markup_override(self, charger):
        cost = await charger.estimate("claude-sonnet", 1000, 500, markup_multiplier=Decimal("2"))
        assert cost.billed_minor == 2100
