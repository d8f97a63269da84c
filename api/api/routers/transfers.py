"""Credit transfer endpoint.

Moves credits between two accounts in one atomic unit, typically from an
organization pool to a member.  Supplying ``transfer_id`` makes a retry
after a timeout safe.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from ledger_engine.errors import InsufficientBalanceError
from ledger_engine.money import to_minor

from api.dependencies import LedgerDep
from api.middleware.prometheus import record_operation
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import TransferRequest, TransferResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transfers", tags=["transfers"])


@router.post("")
async def transfer_credits(
    body: TransferRequest,
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.TRANSFER_CREDITS)),
) -> TransferResponse:
    try:
        receipt = await ledger.transfer(
            body.from_account_id,
            body.to_account_id,
            to_minor(body.amount),
            transfer_id=body.transfer_id,
            description=body.description,
        )
    except InsufficientBalanceError:
        record_operation("transfer", "refused")
        raise
    record_operation("transfer", "duplicate" if receipt.duplicate else "applied")
    return TransferResponse.from_receipt(receipt)
