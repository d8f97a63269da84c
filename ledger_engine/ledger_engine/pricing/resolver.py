"""Pure billed-cost computation over a snapshot of the pricing table."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal

from ledger_engine.errors import LedgerValidationError, UnknownModelError
from ledger_engine.money import ceil_to_minor
from ledger_engine.pricing.models import BilledCost, PricingModel

_TOKENS_PER_PRICE_UNIT = Decimal(1_000_000)


def _check_tokens(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise LedgerValidationError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise LedgerValidationError(f"{name} must be non-negative, got {value}")


def _check_markup(markup: Decimal, source: str) -> Decimal:
    if markup < 1:
        raise LedgerValidationError(f"Markup multiplier must be at least 1, got {markup} from {source}")
    return markup


class PricingResolver:
    """Maps ``(model_id, input_tokens, output_tokens)`` to a billed cost.

    The resolver holds an immutable snapshot of the pricing table; it does
    no I/O.  Refreshing prices means building a new resolver (see
    :class:`~ledger_engine.pricing.catalog.PricingCatalog`).

    Parameters
    ----------
    models:
        Pricing rows, either a mapping keyed by model id or an iterable.
    default_markup:
        Multiplier applied when neither the caller nor the model row
        supplies one.
    """

    def __init__(
        self,
        models: Mapping[str, PricingModel] | Iterable[PricingModel],
        default_markup: Decimal = Decimal("1.5"),
    ) -> None:
        if isinstance(models, Mapping):
            self._models = dict(models)
        else:
            self._models = {m.model_id: m for m in models}
        self._default_markup = _check_markup(default_markup, "the default")

    @property
    def default_markup(self) -> Decimal:
        return self._default_markup

    def models(self) -> list[PricingModel]:
        """Return active models sorted by provider then id."""
        active = [m for m in self._models.values() if m.is_active]
        return sorted(active, key=lambda m: (m.provider, m.model_id))

    def get(self, model_id: str) -> PricingModel:
        model = self._models.get(model_id)
        if model is None or not model.is_active:
            raise UnknownModelError(model_id)
        return model

    def resolve(
        self,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
        *,
        markup_multiplier: Decimal | None = None,
    ) -> BilledCost:
        """Price one model call.

        ``billed = ceil((in * in_price + out * out_price) / 1e6 * markup)``
        computed in exact decimals and rounded up to a whole minor unit.

        Parameters
        ----------
        model_id:
            Key into the pricing table.
        input_tokens, output_tokens:
            Non-negative token counts reported by the provider.
        markup_multiplier:
            Per-account markup override.

        Raises
        ------
        UnknownModelError
            If the model is missing or inactive.
        LedgerValidationError
            If a token count is negative or not an integer, or a markup is below 1.
        """
        _check_tokens("input_tokens", input_tokens)
        _check_tokens("output_tokens", output_tokens)
        model = self.get(model_id)

        if markup_multiplier is not None:
            markup = _check_markup(markup_multiplier, "the caller")
        elif model.markup_multiplier is not None:
            markup = _check_markup(model.markup_multiplier, f"model '{model_id}'")
        else:
            markup = self._default_markup
        base_cost = (
            input_tokens * model.input_price_per_million + output_tokens * model.output_price_per_million
        ) / _TOKENS_PER_PRICE_UNIT

        return BilledCost(
            model_id=model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            base_cost=base_cost,
            markup_multiplier=markup,
            billed_minor=ceil_to_minor(base_cost * markup),
        )
