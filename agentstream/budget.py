import math

from .pricing import MAX_CREDITS_PER_REQUEST, MAX_STEPS_PER_PLAN, plan_value, usage_cost_credits
from .schemas import StepBudget

# Typical agent step: the growing prompt plus a tool call or a chunk of code.
AVG_STEP_INPUT_TOKENS = 4000
AVG_STEP_OUTPUT_TOKENS = 800


def estimate_step_cost(model_id: str) -> float:
    return usage_cost_credits(AVG_STEP_INPUT_TOKENS, AVG_STEP_OUTPUT_TOKENS, model_id)


def get_affordable_steps(plan: str, model_id: str, credit_balance: float) -> StepBudget:
    """How many tool-use iterations this request may run.

    Zero means the request must be rejected before any provider call. Any positive
    balance buys at least one step; the plan ceiling applies regardless of funds.
    """
    cost_per_step = estimate_step_cost(model_id)
    if credit_balance is None or credit_balance <= 0:
        return StepBudget(max_steps=0, estimated_cost_per_step=cost_per_step, total_estimated_cost=0.0)
    affordable = min(float(credit_balance), float(plan_value(MAX_CREDITS_PER_REQUEST, plan)))
    steps = math.floor(affordable / cost_per_step) if cost_per_step > 0 else plan_value(MAX_STEPS_PER_PLAN, plan)
    max_steps = min(plan_value(MAX_STEPS_PER_PLAN, plan), max(1, steps))
    return StepBudget(
        max_steps=max_steps,
        estimated_cost_per_step=cost_per_step,
        total_estimated_cost=max_steps * cost_per_step,
    )
