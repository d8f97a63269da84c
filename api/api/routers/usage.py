"""Usage charging endpoints.

``POST /usage/charge`` prices a model call and debits the account under
its ``usageRef``; a repeated reference returns the first receipt.
``POST /usage/estimate`` prices a call without touching any balance.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from ledger_engine.errors import InsufficientBalanceError
from ledger_engine.metering.events import UsageEvent

from api.dependencies import ChargerDep
from api.middleware.prometheus import record_operation
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import ChargeResponse, CostResponse, EstimateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.post("/charge")
async def charge_usage(
    event: UsageEvent,
    charger: ChargerDep,
    _role: Role = Depends(require_permission(Permission.CHARGE_USAGE)),
) -> ChargeResponse:
    """Charge one model call.

    Returns 402 when the balance cannot cover the cost; the caller must
    block further usage until the account is topped up.
    """
    try:
        result = await charger.charge(event)
    except InsufficientBalanceError:
        record_operation("usage", "refused")
        raise
    record_operation("usage", "duplicate" if result.duplicate else "applied")
    return ChargeResponse.from_result(result)


@router.post("/estimate")
async def estimate_usage(
    body: EstimateRequest,
    charger: ChargerDep,
    _role: Role = Depends(require_permission(Permission.READ_PRICING)),
) -> CostResponse:
    cost = await charger.estimate(
        body.model_id,
        body.input_tokens,
        body.output_tokens,
        markup_multiplier=body.markup_multiplier,
    )
    return CostResponse.from_cost(cost)
