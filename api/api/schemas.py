"""Request and response models for the ledger API.

Monetary request fields are decimal amounts in currency units (``"1.50"``)
and are converted to integer minor units at validation time.  Responses
carry integer minor units plus a two-decimal display string for the
balance.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_engine.ledger.models import (
    CREDIT_TYPES,
    AccountKind,
    AccountSnapshot,
    LedgerReport,
    LedgerTransaction,
    Receipt,
    TransactionType,
    TransferReceipt,
)
from ledger_engine.metering.charger import ChargeResult
from ledger_engine.money import format_amount, to_minor
from ledger_engine.pricing.models import BilledCost, PricingModel
from ledger_engine.webhooks.reconciler import ReconcileResult
from pydantic import BaseModel, Field, field_validator


def _positive_minor(value: Decimal) -> Decimal:
    if to_minor(value) <= 0:
        raise ValueError("Amount must be positive")
    return value


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class OpenAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=128)
    kind: AccountKind = AccountKind.PERSONAL
    owner_id: str | None = None
    welcome_credits: Decimal | None = Field(
        default=None,
        description="Credits granted on creation; the configured default applies when omitted.",
    )

    @field_validator("welcome_credits")
    @classmethod
    def _validate_welcome(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and to_minor(v) < 0:
            raise ValueError("Welcome credits must be non-negative")
        return v


class AccountResponse(BaseModel):
    account_id: str
    kind: AccountKind
    balance: int
    balance_display: str
    purchased_credits: int
    subscription_credits: int
    owner_id: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_snapshot(cls, account: AccountSnapshot) -> AccountResponse:
        return cls(
            account_id=account.account_id,
            kind=account.kind,
            balance=account.balance,
            balance_display=format_amount(account.balance),
            purchased_credits=account.purchased_credits,
            subscription_credits=account.subscription_credits,
            owner_id=account.owner_id,
            version=account.version,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class TransactionResponse(BaseModel):
    transaction_id: str
    account_id: str
    type: TransactionType
    amount: int
    balance_after: int
    description: str
    external_reference: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: LedgerTransaction) -> TransactionResponse:
        return cls(
            transaction_id=txn.transaction_id,
            account_id=txn.account_id,
            type=txn.type,
            amount=txn.amount,
            balance_after=txn.balance_after,
            description=txn.description,
            external_reference=txn.external_reference,
            metadata=txn.metadata,
            created_at=txn.created_at,
        )


class TransactionPageResponse(BaseModel):
    account_id: str
    limit: int
    offset: int
    transactions: list[TransactionResponse]


class ReceiptResponse(BaseModel):
    """Outcome of one ledger mutation.

    ``duplicate`` is true when the reference was already recorded and
    nothing new was applied.
    """

    transaction_id: str
    account_id: str
    type: TransactionType
    amount: int
    balance_after: int
    external_reference: str | None = None
    duplicate: bool = False
    created_at: datetime

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> ReceiptResponse:
        return cls(
            transaction_id=receipt.transaction_id,
            account_id=receipt.account_id,
            type=receipt.type,
            amount=receipt.amount,
            balance_after=receipt.balance_after,
            external_reference=receipt.external_reference,
            duplicate=receipt.duplicate,
            created_at=receipt.created_at,
        )


class LedgerReportResponse(BaseModel):
    account_id: str
    balance: int
    purchased_credits: int
    transactions_total: int
    transaction_count: int
    consistent: bool

    @classmethod
    def from_report(cls, report: LedgerReport) -> LedgerReportResponse:
        return cls(
            account_id=report.account_id,
            balance=report.balance,
            purchased_credits=report.purchased_credits,
            transactions_total=report.transactions_total,
            transaction_count=report.transaction_count,
            consistent=report.consistent,
        )


class CreditRequest(BaseModel):
    amount: Decimal
    external_ref: str = Field(..., min_length=1, max_length=255)
    type: TransactionType = TransactionType.PURCHASE
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount")
    @classmethod
    def _validate_amount(cls, v: Decimal) -> Decimal:
        return _positive_minor(v)

    @field_validator("type")
    @classmethod
    def _validate_type(cls, v: TransactionType) -> TransactionType:
        if v not in CREDIT_TYPES:
            raise ValueError(f"Credit type must be one of {sorted(t.value for t in CREDIT_TYPES)}")
        return v


class AdjustmentRequest(BaseModel):
    """Signed operator correction; negative deltas are capped at the balance."""

    delta: Decimal
    reason: str = Field(..., min_length=1, max_length=500)
    external_ref: str | None = Field(default=None, max_length=255)

    @field_validator("delta")
    @classmethod
    def _validate_delta(cls, v: Decimal) -> Decimal:
        if to_minor(v) == 0:
            raise ValueError("Adjustment must be non-zero")
        return v


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TransferRequest(BaseModel):
    from_account_id: str = Field(..., min_length=1)
    to_account_id: str = Field(..., min_length=1)
    amount: Decimal
    transfer_id: str | None = Field(default=None, max_length=128)
    description: str = ""

    @field_validator("amount")
    @classmethod
    def _validate_amount(cls, v: Decimal) -> Decimal:
        return _positive_minor(v)


class TransferResponse(BaseModel):
    transfer_id: str
    duplicate: bool
    debit: ReceiptResponse
    credit: ReceiptResponse

    @classmethod
    def from_receipt(cls, receipt: TransferReceipt) -> TransferResponse:
        return cls(
            transfer_id=receipt.transfer_id,
            duplicate=receipt.duplicate,
            debit=ReceiptResponse.from_receipt(receipt.from_receipt),
            credit=ReceiptResponse.from_receipt(receipt.to_receipt),
        )


# ---------------------------------------------------------------------------
# Usage and pricing
# ---------------------------------------------------------------------------


class EstimateRequest(BaseModel):
    model_id: str = Field(..., min_length=1)
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    markup_multiplier: Decimal | None = Field(default=None, ge=1)


class CostResponse(BaseModel):
    model_id: str
    input_tokens: int
    output_tokens: int
    base_cost: str
    markup_multiplier: str
    billed: int
    billed_display: str

    @classmethod
    def from_cost(cls, cost: BilledCost) -> CostResponse:
        return cls(
            model_id=cost.model_id,
            input_tokens=cost.input_tokens,
            output_tokens=cost.output_tokens,
            base_cost=str(cost.base_cost),
            markup_multiplier=str(cost.markup_multiplier),
            billed=cost.billed_minor,
            billed_display=format_amount(cost.billed_minor, 5),
        )


class ChargeResponse(BaseModel):
    usage_ref: str
    duplicate: bool
    cost: CostResponse
    receipt: ReceiptResponse | None = None

    @classmethod
    def from_result(cls, result: ChargeResult) -> ChargeResponse:
        return cls(
            usage_ref=result.usage_ref,
            duplicate=result.duplicate,
            cost=CostResponse.from_cost(result.cost),
            receipt=ReceiptResponse.from_receipt(result.receipt) if result.receipt else None,
        )


class PricingModelResponse(BaseModel):
    model_id: str
    provider: str
    input_price_per_million: str
    output_price_per_million: str
    markup_multiplier: str

    @classmethod
    def from_model(cls, model: PricingModel, default_markup: Decimal) -> PricingModelResponse:
        return cls(
            model_id=model.model_id,
            provider=model.provider,
            input_price_per_million=str(model.input_price_per_million),
            output_price_per_million=str(model.output_price_per_million),
            markup_multiplier=str(default_markup if model.markup_multiplier is None else model.markup_multiplier),
        )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str
    status: str
    detail: str | None = None

    @classmethod
    def from_result(cls, result: ReconcileResult) -> WebhookAckResponse:
        return cls(
            event_id=result.event_id,
            status=result.status.value,
            detail=result.detail,
        )
