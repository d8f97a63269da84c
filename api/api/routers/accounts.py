"""Account endpoints: opening, balances, history, credits and adjustments.

Handlers only translate HTTP to ledger calls.  Ledger errors propagate to
the exception handlers registered in :func:`api.main.create_app`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from ledger_engine.ledger.models import TransactionType
from ledger_engine.money import to_minor

from api.dependencies import CallerDep, LedgerDep, ServicesDep
from api.middleware.prometheus import record_operation
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import (
    AccountResponse,
    AdjustmentRequest,
    CreditRequest,
    LedgerReportResponse,
    OpenAccountRequest,
    ReceiptResponse,
    TransactionPageResponse,
    TransactionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("", status_code=201)
async def open_account(
    body: OpenAccountRequest,
    services: ServicesDep,
    _role: Role = Depends(require_permission(Permission.OPEN_ACCOUNTS)),
) -> AccountResponse:
    """Open a personal or organization account.

    The account starts at zero and receives its welcome credits as an
    ``admin_credit`` transaction, so its history explains its balance.
    """
    welcome = (
        to_minor(body.welcome_credits) if body.welcome_credits is not None else services.settings.welcome_credits_minor
    )
    account = await services.ledger.open_account(
        body.account_id,
        body.kind,
        owner_id=body.owner_id,
        initial_credits=welcome,
    )
    record_operation("open_account", "applied")
    return AccountResponse.from_snapshot(account)


@router.get("/{account_id}")
async def get_account(
    account_id: str,
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.READ_ACCOUNTS)),
) -> AccountResponse:
    return AccountResponse.from_snapshot(await ledger.get_account(account_id))


@router.get("/{account_id}/transactions")
async def list_transactions(
    account_id: str,
    ledger: LedgerDep,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_ACCOUNTS)),
) -> TransactionPageResponse:
    """Return one page of the account's history, newest first."""
    await ledger.get_account(account_id)
    transactions = await ledger.list_transactions(account_id, limit=limit, offset=offset)
    return TransactionPageResponse(
        account_id=account_id,
        limit=limit,
        offset=offset,
        transactions=[TransactionResponse.from_transaction(t) for t in transactions],
    )


@router.get("/{account_id}/transactions/lookup")
async def lookup_transaction(
    account_id: str,
    ledger: LedgerDep,
    ref: str = Query(..., min_length=1, description="External or usage reference"),
    _role: Role = Depends(require_permission(Permission.READ_ACCOUNTS)),
) -> ReceiptResponse:
    """Check whether an operation with *ref* was recorded.

    Callers whose previous attempt ended with an unknown outcome use this
    before retrying.
    """
    receipt = await ledger.lookup(account_id, ref)
    if receipt is None:
        raise HTTPException(status_code=404, detail=f"No transaction with reference '{ref}'")
    return ReceiptResponse.from_receipt(receipt)


@router.get("/{account_id}/verify")
async def verify_account(
    account_id: str,
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.READ_ACCOUNTS)),
) -> LedgerReportResponse:
    report = await ledger.verify(account_id)
    if not report.consistent:
        logger.error(
            "Ledger inconsistency on %s: balance=%d transactions=%d",
            account_id,
            report.balance,
            report.transactions_total,
        )
    return LedgerReportResponse.from_report(report)


@router.post("/{account_id}/credits")
async def credit_account(
    account_id: str,
    body: CreditRequest,
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.GRANT_CREDITS)),
) -> ReceiptResponse:
    """Grant credits under an external reference.

    Purchases count toward ``purchased_credits``.  A repeated reference
    returns the original receipt with ``duplicate: true``.
    """
    receipt = await ledger.credit(
        account_id,
        to_minor(body.amount),
        external_ref=body.external_ref,
        txn_type=body.type,
        description=body.description,
        track_purchased=body.type is TransactionType.PURCHASE,
        metadata=body.metadata,
    )
    record_operation("credit", "duplicate" if receipt.duplicate else "applied")
    return ReceiptResponse.from_receipt(receipt)


@router.post("/{account_id}/adjustments")
async def adjust_account(
    account_id: str,
    body: AdjustmentRequest,
    ledger: LedgerDep,
    actor: CallerDep,
    _role: Role = Depends(require_permission(Permission.ADJUST_BALANCES)),
) -> ReceiptResponse:
    """Apply a manual correction.  Admin only."""
    receipt = await ledger.adjust_admin(
        account_id,
        to_minor(body.delta),
        body.reason,
        actor,
        external_ref=body.external_ref,
    )
    record_operation("adjust_admin", "duplicate" if receipt.duplicate else "applied")
    return ReceiptResponse.from_receipt(receipt)
