"""
Per-model token pricing used to cost AI requests.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

# USD per 1K tokens
MODEL_RATES: Dict[str, Dict[str, Decimal]] = {
    "claude-sonnet-4": {"input": Decimal("0.003"), "output": Decimal("0.015")},
    "claude-opus-4": {"input": Decimal("0.015"), "output": Decimal("0.075")},
    "claude-haiku-4": {"input": Decimal("0.00025"), "output": Decimal("0.00125")},
}

DEFAULT_MODEL = "claude-sonnet-4"


def rates_for(model: Optional[str]) -> Dict[str, Decimal]:
    """Rates for a model, falling back to the default model when unknown."""
    return MODEL_RATES.get(model or DEFAULT_MODEL, MODEL_RATES[DEFAULT_MODEL])


def estimate_cost(model: Optional[str], prompt_tokens: int, completion_tokens: int = 0) -> Decimal:
    """
    Price a request's token usage.

    Returns:
        Cost in USD, rounded to 4 decimal places
    """
    rates = rates_for(model)
    cost = (
        Decimal(prompt_tokens) * rates["input"]
        + Decimal(completion_tokens) * rates["output"]
    ) / 1000
    return cost.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
