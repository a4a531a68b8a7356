"""
Domain types shared by the ledger, scorer and router.

Defines tiers, cost classes, edit tasks, provider identities and the
immutable value objects passed between components.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union

# Quality hints arrive either as a "high quality" toggle or a 0-1 scale
QualityHint = Union[bool, float]

STANDARD_QUALITY = 0.8


class Tier(Enum):
    """Account subscription level."""
    FREE = "free"
    PRO = "pro"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class CostClass(Enum):
    """Billing class of a single enhancement."""
    FREE = "free"
    BUDGET = "budget"
    PREMIUM = "premium"

    @property
    def billable(self) -> bool:
        """Whether this class is charged against the ledger."""
        return self is not CostClass.FREE

    @property
    def rank(self) -> int:
        """Relative cost, used to order classes cheapest first."""
        return _COST_RANK[self]


_COST_RANK = {
    CostClass.FREE: 0,
    CostClass.BUDGET: 1,
    CostClass.PREMIUM: 2,
}


class EditTask(Enum):
    """Enhancement intents a caller can request."""
    SIMPLE_ENHANCE = "simple_enhance"
    BACKGROUND_REMOVAL = "background_removal"
    CLEANUP = "cleanup"
    CREATIVE_EDIT = "creative_edit"
    CUSTOM_PROMPT = "custom_prompt"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()

    @property
    def requires_prompt(self) -> bool:
        return self is EditTask.CUSTOM_PROMPT


class ProviderID(Enum):
    """Closed set of provider variants.

    Declaration order is the final tie-break when ordering a provider chain.
    """
    GEMINI = "gemini"
    OPENAI = "openai"
    FAL_FLUX = "fal_flux"
    CLIPDROP = "clipdrop"
    ON_DEVICE = "on_device"

    @property
    def ordinal(self) -> int:
        return list(ProviderID).index(self)


@dataclass(frozen=True)
class FrameScore:
    """Quality score of one candidate frame. All values are in [0, 1]."""
    sharpness: float
    exposure: float
    composition: float
    overall_score: float

    def __post_init__(self):
        for name in ("sharpness", "exposure", "composition", "overall_score"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class RoutingDecision:
    """Cost class and ordered provider chain for one request.

    Never mutated; a changed decision is a new object.
    """
    cost_class: CostClass
    provider_chain: Tuple[ProviderID, ...]
    will_consume_credit: bool
    estimated_quality: float

    @property
    def has_free_fallback(self) -> bool:
        return ProviderID.ON_DEVICE in self.provider_chain


@dataclass(frozen=True)
class ProviderResult:
    """Successful enhancement.

    ``cost_class`` is the class actually charged for the request, which is
    FREE when a free-cost provider produced the image or the result was
    served from the result cache.
    """
    image: Any
    provider_used: ProviderID
    cost_class: CostClass
    elapsed_time: float
    from_cache: bool = False


@dataclass(frozen=True)
class UsageSnapshot:
    """Read-only view of an account's credit usage for display."""
    tier: Tier
    budget_remaining: int
    premium_remaining: int
    budget_capacity: int
    premium_capacity: int
    period_start: datetime
    next_reset: datetime

    def usage_percentage(self, cost_class: CostClass) -> float:
        """Fraction of the period's capacity already used (0.0 for FREE)."""
        if cost_class is CostClass.BUDGET:
            capacity, remaining = self.budget_capacity, self.budget_remaining
        elif cost_class is CostClass.PREMIUM:
            capacity, remaining = self.premium_capacity, self.premium_remaining
        else:
            return 0.0
        if capacity <= 0:
            return 0.0
        return (capacity - remaining) / capacity


def normalize_quality(hint: Optional[QualityHint]) -> float:
    """Map a quality hint to the 0-1 scale providers receive."""
    if hint is None:
        return STANDARD_QUALITY
    if isinstance(hint, bool):
        return 1.0 if hint else STANDARD_QUALITY
    return max(0.0, min(1.0, float(hint)))


# Checked in order; first match wins
_PROMPT_KEYWORDS = (
    (EditTask.BACKGROUND_REMOVAL, ("background", "cutout", "isolate", "remove bg")),
    (EditTask.CLEANUP, ("clean", "fix", "repair", "restore", "blemish")),
    (EditTask.CREATIVE_EDIT, (
        "creative", "fantasy", "surreal", "transform", "style", "vintage",
        "retro", "artistic", "painting", "sketch", "cartoon", "anime",
    )),
    (EditTask.SIMPLE_ENHANCE, (
        "enhance", "improve", "quality", "sharpen", "brighten", "contrast",
    )),
)


def classify_prompt(prompt: Optional[str]) -> EditTask:
    """Classify a free-text prompt into an edit task.

    An empty prompt means a plain enhancement; a prompt that matches no
    keyword is routed as a custom prompt.
    """
    if not prompt or not prompt.strip():
        return EditTask.SIMPLE_ENHANCE

    lowered = prompt.lower()
    for task, keywords in _PROMPT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return task
    return EditTask.CUSTOM_PROMPT
