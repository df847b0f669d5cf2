from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
import logging
import math


logger = logging.getLogger(__name__)

DEFAULT_MODEL_KEY = "gemini-3-pro-preview"
DEFAULT_CONTEXT_UNITS_ESTIMATE = 50_000
DEFAULT_ESTIMATED_OUTPUT_UNITS = 1000

_ONE_MILLION = Decimal("1000000")
_ONE_THOUSAND = Decimal("1000")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PricingTier:
    # None marks the unbounded top tier.
    max_units: int | None
    input_per_1m_usd: Decimal
    output_per_1m_usd: Decimal


@dataclass(frozen=True)
class CreditPack:
    id: str
    name: str
    credits: int
    model_key: str


# Tiers are ordered by ascending bound; the first match wins.
MODEL_PRICING: dict[str, tuple[PricingTier, ...]] = {
    "gemini-3-pro-preview": (
        PricingTier(max_units=200_000, input_per_1m_usd=Decimal("2.00"), output_per_1m_usd=Decimal("12.00")),
        PricingTier(max_units=None, input_per_1m_usd=Decimal("4.00"), output_per_1m_usd=Decimal("18.00")),
    ),
    "gemini-2.5-flash": (
        PricingTier(max_units=None, input_per_1m_usd=Decimal("0.075"), output_per_1m_usd=Decimal("0.30")),
    ),
    "gemini-2.5-flash-preview": (
        PricingTier(max_units=None, input_per_1m_usd=Decimal("0.075"), output_per_1m_usd=Decimal("0.30")),
    ),
}

CREDIT_PACKS: dict[str, CreditPack] = {
    "starter": CreditPack(id="starter", name="Starter Pack", credits=5_000, model_key=DEFAULT_MODEL_KEY),
    "pro": CreditPack(id="pro", name="Pro Pack", credits=25_000, model_key=DEFAULT_MODEL_KEY),
    "enterprise": CreditPack(
        id="enterprise", name="Enterprise Pack", credits=100_000, model_key=DEFAULT_MODEL_KEY
    ),
}

# Display-only reference costs; real debits are computed from metered usage.
FEATURE_CREDIT_ESTIMATES: dict[str, int] = {
    "lead_search": 5,
    "brand_analysis": 5,
    "pitch_email": 3,
    "website_concept": 10,
    "website_build": 15,
    "image_generation": 10,
    "video_generation": 20,
    "marketing_strategy": 5,
    "chat": 2,
}


def allowed_model_keys() -> list[str]:
    return list(MODEL_PRICING.keys())


def is_known_model(model_key: str) -> bool:
    return model_key in MODEL_PRICING


def _to_decimal(value: float | int | Decimal) -> Decimal:
    # Normalize numeric values to Decimal so float noise never reaches the ceiling step.
    return value if isinstance(value, Decimal) else Decimal(str(value))


def tier_for(model_key: str, total_units: int) -> PricingTier:
    # Pick the first tier whose bound covers the volume; unknown models fall back to the default.
    tiers = MODEL_PRICING.get(model_key)
    if tiers is None:
        logger.warning("pricing_unknown_model model_key=%s fallback=%s", model_key, DEFAULT_MODEL_KEY)
        return MODEL_PRICING[DEFAULT_MODEL_KEY][0]
    for tier in tiers:
        if tier.max_units is None or total_units <= tier.max_units:
            return tier
    return tiers[-1]


def raw_cost_usd(model_key: str, input_units: int, output_units: int) -> Decimal:
    # Upstream cost before margin, tier chosen by total volume of the call.
    tier = tier_for(model_key, input_units + output_units)
    input_cost = (Decimal(input_units) / _ONE_MILLION) * tier.input_per_1m_usd
    output_cost = (Decimal(output_units) / _ONE_MILLION) * tier.output_per_1m_usd
    return input_cost + output_cost


def price_per_1k_credits(
    model_key: str,
    margin: float | Decimal,
    context_units_estimate: int | None = None,
) -> Decimal:
    # Blend input and output rates 50/50 and apply the margin markup.
    context_units = (
        DEFAULT_CONTEXT_UNITS_ESTIMATE if context_units_estimate is None else context_units_estimate
    )
    tier = tier_for(model_key, context_units)
    blended = (tier.input_per_1m_usd / _ONE_THOUSAND + tier.output_per_1m_usd / _ONE_THOUSAND) / 2
    return blended * (1 + _to_decimal(margin))


def credits_for_cost(
    model_key: str,
    cost_usd: float | Decimal,
    margin: float | Decimal,
    context_units_estimate: int | None = None,
) -> int:
    # Always round up so a call is never under-charged.
    cost = _to_decimal(cost_usd)
    if cost <= 0:
        return 0
    price = price_per_1k_credits(model_key, margin, context_units_estimate)
    raw = cost / price * _ONE_THOUSAND
    return int(raw.to_integral_value(rounding=ROUND_CEILING))


def estimate_required_credits(
    model_key: str,
    input_units: int,
    output_units: int = DEFAULT_ESTIMATED_OUTPUT_UNITS,
    *,
    margin: float | Decimal,
) -> int:
    # Select the tier from the same volume settlement uses so estimates match debits near boundaries.
    context_units = input_units + output_units
    cost = raw_cost_usd(model_key, input_units, output_units)
    return credits_for_cost(model_key, cost, margin, context_units)


def pack_price_usd(model_key: str, credits: int, margin: float | Decimal) -> Decimal:
    return (Decimal(credits) / _ONE_THOUSAND) * price_per_1k_credits(model_key, margin)


def format_usd(amount: Decimal) -> str:
    # Half-up to the cent, like a checkout page would show it.
    return f"${amount.quantize(_CENT, rounding=ROUND_HALF_UP)}"


def format_pack_price(model_key: str, credits: int, margin: float | Decimal) -> str:
    return format_usd(pack_price_usd(model_key, credits, margin))


def suggested_retail_price(computed_price: float | Decimal) -> Decimal:
    # Round up to the next "nice" price point.
    price = _to_decimal(computed_price)
    if price < 5:
        return Decimal("4.99")
    if price < 15:
        return Decimal("14.99")
    if price < 25:
        return Decimal("19.99")
    if price < 50:
        return Decimal("49.99")
    if price < 80:
        return Decimal("79.99")
    return Decimal(math.ceil(price / 10) * 10) - Decimal("0.01")
