"""Per-model pricing and exact cost arithmetic.

Prices are USD per one million tokens. All arithmetic is ``Decimal`` and
unrounded, so ``input_cost + output_cost == total_cost`` holds exactly.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from propex.config.settings import ModelPrice, PricingConfig

logger = logging.getLogger(__name__)

_MILLION = Decimal(1_000_000)


def price_for(model_name: str, pricing: PricingConfig) -> ModelPrice:
    """Price entry for ``model_name``, matched case-insensitively.

    Unknown models fall back to ``pricing.default`` with a warning so missing
    table entries show up in the logs.
    """
    key = model_name.strip().lower()
    for name, price in pricing.models.items():
        if name.lower() == key:
            return price
    logger.warning("Model not in price table, using default pricing", extra={"model": model_name})
    return pricing.default


def compute_cost(
    model_name: str, input_tokens: int, output_tokens: int, pricing: PricingConfig
) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(input_cost, output_cost, total_cost)`` in USD."""
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts must be non-negative")
    price = price_for(model_name, pricing)
    input_cost = Decimal(input_tokens) / _MILLION * price.input_per_million
    output_cost = Decimal(output_tokens) / _MILLION * price.output_per_million
    return input_cost, output_cost, input_cost + output_cost
