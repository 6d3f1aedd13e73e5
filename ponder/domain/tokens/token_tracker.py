"""Token budget accounting.

Usage values are immutable pydantic models; every operation returns a new
``TokenUsage``. The budget is a hard ceiling checked by the orchestration
loop after every phase, the warning threshold is advisory.
"""
from typing import Optional
import math
import structlog

from ponder.domain.models.agent_state import TokenCounts, TokenUsage
from ponder.infrastructure.tokenizer import TokenCounter, count_tokens

logger = structlog.get_logger(__name__)

DEFAULT_BUDGET = 100000
DEFAULT_WARNING_RATIO = 0.8
# Expected output length relative to input when estimating before a call
OUTPUT_ESTIMATE_RATIO = 0.5


def create_token_usage(budget: int = DEFAULT_BUDGET, warning_ratio: float = DEFAULT_WARNING_RATIO) -> TokenUsage:
    """Fresh usage with the warning threshold at warning_ratio of the budget"""

    return TokenUsage(
        budget=budget,
        warning_threshold=math.floor(budget * warning_ratio),
    )


def estimate_tokens(text: str, token_counter: Optional[TokenCounter] = None) -> TokenCounts:
    """Estimate input tokens for a prompt and the output it will likely produce"""

    counter = token_counter or count_tokens
    input_tokens = counter(text)
    return TokenCounts(input=input_tokens, output=math.ceil(input_tokens * OUTPUT_ESTIMATE_RATIO))


def track_usage(usage: TokenUsage, input_tokens: int, output_tokens: int) -> TokenUsage:
    """Add a call's tokens to both the session total and the current operation"""

    spent = TokenCounts(input=input_tokens, output=output_tokens)
    updated = usage.model_copy(update={
        "session_total": usage.session_total.plus(spent),
        "current_operation": usage.current_operation.plus(spent),
    })

    if not is_warning_threshold(usage) and is_warning_threshold(updated):
        logger.warning(
            "Token budget warning threshold crossed",
            total=updated.session_total.total,
            warning_threshold=updated.warning_threshold,
            budget=updated.budget,
        )
    return updated


def total_tokens(usage: TokenUsage) -> int:
    return usage.session_total.total


def is_budget_exceeded(usage: TokenUsage) -> bool:
    """True once the session total reaches the budget"""

    return total_tokens(usage) >= usage.budget


def is_warning_threshold(usage: TokenUsage) -> bool:
    """True once the session total reaches the warning threshold"""

    return total_tokens(usage) >= usage.warning_threshold


def get_remaining_budget(usage: TokenUsage) -> int:
    return max(0, usage.budget - total_tokens(usage))


def reset_current_operation(usage: TokenUsage) -> TokenUsage:
    return usage.model_copy(update={"current_operation": TokenCounts()})


def format_usage(usage: TokenUsage) -> str:
    """Human-readable usage line"""

    total = total_tokens(usage)
    percent = round(total / usage.budget * 100) if usage.budget else 0
    return (
        f"{usage.session_total.input:,} in / {usage.session_total.output:,} out "
        f"({total:,} total, {percent}% of budget)"
    )
