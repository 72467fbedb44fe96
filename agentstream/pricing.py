import logging
import math
from typing import Dict, Tuple

logger = logging.getLogger("uvicorn.error")

# 1 credit = $0.01; usage is billed at 4x the provider cost.
CREDIT_TO_USD_RATE = 0.01
MARKUP_MULTIPLIER = 4

# USD per token (input, output).
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "anthropic/claude-sonnet-4.5": (0.000003, 0.000015),
    "anthropic/claude-haiku-4.5": (0.0000008, 0.000004),
    "anthropic/claude-opus-4.5": (0.000015, 0.000075),
    "google/gemini-2.5-flash": (0.000000075, 0.0000003),
    "google/gemini-2.5-pro": (0.00000125, 0.00001),
    "xai/grok-code-fast-1": (0.0000001, 0.0000004),
    "xai/glm-4.7": (0.0000005, 0.000002),
    "mistral/devstral-2": (0.00000014, 0.00000014),
    "mistral/devstral-small-2": (0.0000001, 0.0000001),
    "codestral-latest": (0.0000003, 0.0000009),
    "openai/gpt-5.1-thinking": (0.000003, 0.000015),
    "openai/gpt-5.2-codex": (0.000003, 0.000015),
    "openai/o3": (0.000002, 0.000008),
    "moonshotai/kimi-k2-thinking": (0.0000005, 0.000002),
    "minimax/minimax-m2.1": (0.0000003, 0.000001),
    "alibaba/qwen3-max": (0.0000004, 0.0000016),
    "zai/glm-4.7-flash": (0.0000002, 0.0000008),
}

# Unknown models are priced like Claude Sonnet so they are never undercharged.
DEFAULT_PRICING = (0.000003, 0.000015)

DEFAULT_PLAN = "free"

MONTHLY_CREDITS_PER_PLAN: Dict[str, int] = {
    "free": 150,
    "creator": 1000,
    "collaborate": 2500,
    "scale": 5000,
}

MAX_CREDITS_PER_REQUEST: Dict[str, int] = {
    "free": 30,
    "creator": 150,
    "collaborate": 250,
    "scale": 500,
}

# Safety net against runaway agent loops, independent of the balance.
MAX_STEPS_PER_PLAN: Dict[str, int] = {
    "free": 15,
    "creator": 30,
    "collaborate": 40,
    "scale": 50,
}

MAX_REQUESTS_PER_MONTH: Dict[str, int] = {
    "free": 20,
    "creator": 250,
    "collaborate": 600,
    "scale": 2000,
}


def plan_value(table: Dict[str, int], plan: str) -> int:
    return table.get((plan or "").lower(), table[DEFAULT_PLAN])


def get_model_pricing(model: str) -> Tuple[float, float]:
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    normalized = (model or "").lower()
    if normalized:
        for key, pricing in MODEL_PRICING.items():
            bare = key.split("/")[-1].lower()
            if normalized == bare or normalized.endswith("/" + bare):
                return pricing
    logger.warning("Unknown model %r; pricing with default rates", model)
    return DEFAULT_PRICING


def usage_cost_credits(input_tokens: int, output_tokens: int, model: str) -> float:
    """Unrounded credit cost, used for estimates."""
    input_price, output_price = get_model_pricing(model)
    usd = input_tokens * input_price + output_tokens * output_price
    return usd / CREDIT_TO_USD_RATE * MARKUP_MULTIPLIER


def calculate_credits_from_tokens(input_tokens: int, output_tokens: int, model: str) -> int:
    # Rounded to whole credits with a floor of 1 so no billed request is free.
    credits = math.ceil(round(usage_cost_credits(input_tokens, output_tokens, model), 9))
    return max(1, credits)


def list_models(fallback_model_id: str) -> list[dict]:
    return [
        {
            "id": model_id,
            "input_per_token": prices[0],
            "output_per_token": prices[1],
            "fallback": model_id == fallback_model_id,
        }
        for model_id, prices in MODEL_PRICING.items()
    ]
