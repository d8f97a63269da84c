"""Pricing table endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import CatalogDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import PricingModelResponse

router = APIRouter(prefix="/pricing", tags=["pricing"])


@router.get("/models")
async def list_pricing_models(
    catalog: CatalogDep,
    _role: Role = Depends(require_permission(Permission.READ_PRICING)),
) -> list[PricingModelResponse]:
    """Return the active models, by provider, with their effective markup."""
    resolver = await catalog.resolver()
    return [
        PricingModelResponse.from_model(model, resolver.default_markup)
        for model in resolver.models()
    ]
