"""
Tests for token pricing.
"""
from decimal import Decimal

from atlas.services.quota.pricing import DEFAULT_MODEL, MODEL_RATES, estimate_cost, rates_for


def test_known_model():
    assert estimate_cost("claude-opus-4", 1000, 1000) == Decimal("0.0900")


def test_unknown_model_uses_default():
    assert rates_for("gpt-unknown") == MODEL_RATES[DEFAULT_MODEL]
    assert rates_for(None) == MODEL_RATES[DEFAULT_MODEL]


def test_rounds_to_four_places():
    assert estimate_cost("claude-haiku-4", 1, 0) == Decimal("0.0000")
    assert estimate_cost("claude-haiku-4", 1000, 0) == Decimal("0.0003")
