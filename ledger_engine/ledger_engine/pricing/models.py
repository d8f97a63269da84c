"""Value types for the pricing table and resolved costs."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class PricingModel:
    """Per-model provider prices, in currency units per million tokens.

    ``markup_multiplier`` overrides the global markup for this model when
    set.
    """

    model_id: str
    provider: str
    input_price_per_million: Decimal
    output_price_per_million: Decimal
    markup_multiplier: Decimal | None = None
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class BilledCost:
    """The result of pricing a single model call.

    ``base_cost`` is the exact provider cost in currency units.
    ``billed_minor`` is the end-user charge in minor units, rounded up.
    """

    model_id: str
    input_tokens: int
    output_tokens: int
    base_cost: Decimal
    markup_multiplier: Decimal
    billed_minor: int
