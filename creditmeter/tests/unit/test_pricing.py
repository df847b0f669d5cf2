from __future__ import annotations

from decimal import Decimal

from creditmeter.services.credits.pricing import (
    DEFAULT_MODEL_KEY,
    credits_for_cost,
    estimate_required_credits,
    format_pack_price,
    format_usd,
    pack_price_usd,
    price_per_1k_credits,
    raw_cost_usd,
    suggested_retail_price,
    tier_for,
)


def test_tier_selected_by_total_units_at_boundary() -> None:
    # 200k total units stays in the base tier; one more unit moves the whole call up.
    assert raw_cost_usd(DEFAULT_MODEL_KEY, 199_000, 1_000) == Decimal("0.398") + Decimal("0.012")
    assert raw_cost_usd(DEFAULT_MODEL_KEY, 199_001, 1_000) == Decimal("0.796004") + Decimal("0.018")
    assert tier_for(DEFAULT_MODEL_KEY, 200_000).max_units == 200_000
    assert tier_for(DEFAULT_MODEL_KEY, 200_001).max_units is None


def test_unknown_model_falls_back_to_default_base_tier() -> None:
    assert tier_for("not-a-model", 10) == tier_for(DEFAULT_MODEL_KEY, 10)


def test_price_per_1k_blends_rates_and_applies_margin() -> None:
    assert price_per_1k_credits(DEFAULT_MODEL_KEY, 0) == Decimal("0.007")
    assert price_per_1k_credits(DEFAULT_MODEL_KEY, Decimal("0.45")) == Decimal("0.01015")


def test_credits_round_up_and_zero_cost_is_free() -> None:
    assert credits_for_cost(DEFAULT_MODEL_KEY, Decimal("0.000001"), 0.45) == 1
    assert credits_for_cost(DEFAULT_MODEL_KEY, 0, 0.45) == 0
    # Exact multiples are not bumped.
    assert credits_for_cost(DEFAULT_MODEL_KEY, Decimal("0.007"), 0) == 1000


def test_typical_call_cost_matches_settlement() -> None:
    # 1000 in / 500 out at a 45% margin: 0.008 USD at 0.01015 per 1k credits.
    assert estimate_required_credits(DEFAULT_MODEL_KEY, 1000, 500, margin=Decimal("0.45")) == 789
    cost = raw_cost_usd(DEFAULT_MODEL_KEY, 1000, 500)
    assert cost == Decimal("0.008")
    assert credits_for_cost(DEFAULT_MODEL_KEY, cost, Decimal("0.45"), 1500) == 789


def test_pack_pricing_and_retail_rounding() -> None:
    price = pack_price_usd(DEFAULT_MODEL_KEY, 5_000, Decimal("0.45"))
    assert price == Decimal("0.05075")
    assert format_pack_price(DEFAULT_MODEL_KEY, 5_000, Decimal("0.45")) == "$0.05"
    assert suggested_retail_price(price) == Decimal("4.99")
    assert suggested_retail_price(Decimal("12")) == Decimal("14.99")
    assert suggested_retail_price(Decimal("60")) == Decimal("79.99")
    assert suggested_retail_price(Decimal("123.4")) == Decimal("129.99")


def test_display_prices_round_half_up_to_the_cent() -> None:
    assert format_usd(Decimal("0.125")) == "$0.13"
    assert format_usd(Decimal("2.345")) == "$2.35"
    assert format_usd(Decimal("0.124")) == "$0.12"
    assert format_usd(Decimal("7")) == "$7.00"
