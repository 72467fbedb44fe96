from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


LedgerOutcome = Literal["success", "aborted", "error"]
PlanName = Literal["free", "creator", "collaborate", "scale"]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: Any = ""
    reasoning: Optional[str] = None

    model_config = {"extra": "allow"}


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    model: Optional[str] = None
    project_id: Optional[str] = None
    continuation_token: Optional[str] = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return self.input_tokens <= 0 and self.output_tokens <= 0

    def plus(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class StepBudget(BaseModel):
    max_steps: int
    estimated_cost_per_step: float
    total_estimated_cost: float


class ContinuationState(BaseModel):
    token: str
    elapsed_ms: int
    messages: List[Dict[str, Any]]
    tool_events: List[Dict[str, Any]] = Field(default_factory=list)
    model: str
    user_id: str
    request_id: str
    project_id: Optional[str] = None
    project_files: Dict[str, str] = Field(default_factory=dict)
    step_count: int = 0


class DeferredUsage(BaseModel):
    """Usage accrued by earlier requests of a continuation chain, billed by the last one."""

    usage: Usage = Field(default_factory=Usage)
    steps: int = 0
    response_time_ms: int = 0
    models: List[str] = Field(default_factory=list)


class DeductionResult(BaseModel):
    success: bool
    credits_used: float = 0
    new_balance: float = 0
    error: Optional[str] = None
    error_code: Optional[
        Literal["INSUFFICIENT_CREDITS", "NO_WALLET", "INVALID_USER", "DATABASE_ERROR"]
    ] = None


class WalletBalance(BaseModel):
    user_id: str
    credits_balance: float
    credits_used_this_month: float = 0
    credits_used_total: float = 0
    requests_this_month: int = 0
    current_plan: str = "free"
    subscription_status: str = "inactive"

    @property
    def can_purchase_credits(self) -> bool:
        return self.current_plan != "free"


class LedgerEntry(BaseModel):
    user_id: str
    request_id: str
    model: str
    input_tokens: int
    output_tokens: int
    steps: int
    response_time_ms: int
    outcome: LedgerOutcome
    usage_source: Literal["authoritative", "per_step", "estimated", "deferred"]
    credits_used: float = 0
    new_balance: float = 0
