"""Usage pricing: model price table, markup, and billed-cost resolution."""

from ledger_engine.pricing.catalog import PricingCatalog
from ledger_engine.pricing.models import BilledCost, PricingModel
from ledger_engine.pricing.resolver import PricingResolver

__all__ = ["BilledCost", "PricingCatalog", "PricingModel", "PricingResolver"]
