"""Token cost estimation from per-model pricing."""

from sessiondeck.config import DEFAULT_PRICING, MODEL_PRICING
from sessiondeck.models import TokenUsage


def get_model_pricing(model: str | None) -> tuple[float, float, float, float]:
    """Per-1K prices (input, output, cache_creation, cache_read), default if unknown."""
    if model and model in MODEL_PRICING:
        return MODEL_PRICING[model]
    return DEFAULT_PRICING


def cost_for(model: str | None, usage: TokenUsage) -> float:
    prices = get_model_pricing(model)
    return sum(count / 1000.0 * price for count, price in zip(usage.counts(), prices))


def priced(model: str | None, usage: TokenUsage) -> TokenUsage:
    """Return ``usage`` with its cost recomputed from its token counts."""
    return TokenUsage(
        input=usage.input,
        output=usage.output,
        cache_creation=usage.cache_creation,
        cache_read=usage.cache_read,
        cost=cost_for(model, usage),
    )
