"""
In-memory provider adapters with scripted behaviour.

Used by the test suite and the CLI demo to exercise routing without network
or heavy compute.
"""

import asyncio
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Union

from PIL import Image

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

from .base import ProviderAdapter, Size

# A scripted step: return an image, raise an exception, or return the input unchanged (None)
Outcome = Union[Image.Image, Exception, None]


@dataclass(frozen=True)
class FakeCall:
    """One recorded ``execute`` call."""
    task: EditTask
    prompt: Optional[str]
    quality: float
    target_size: Optional[Size]


class FakeProvider(ProviderAdapter):
    """Adapter that replays scripted outcomes.

    Outcomes are consumed one per call; once exhausted the last outcome
    repeats. ``delay`` seconds are slept before every outcome, which lets
    tests exercise timeouts and cancellation.
    """

    def __init__(
        self,
        provider_id: ProviderID,
        cost_class: CostClass = CostClass.BUDGET,
        tasks: Iterable[EditTask] = tuple(EditTask),
        outcomes: Iterable[Outcome] = (None,),
        delay: float = 0.0,
        max_image_pixels: Optional[int] = None,
    ):
        self.provider_id = provider_id
        self.cost_class = cost_class
        self.max_image_pixels = max_image_pixels
        self.delay = delay
        self._tasks = frozenset(tasks)
        self._outcomes: List[Outcome] = list(outcomes) or [None]
        self.calls: List[FakeCall] = []
        self.cancelled = False
        self.closed = False

    @classmethod
    def failing(cls, provider_id: ProviderID, error: ProviderError, **kwargs) -> "FakeProvider":
        return cls(provider_id, outcomes=[error], **kwargs)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def capabilities(self) -> FrozenSet[EditTask]:
        return self._tasks

    async def execute(
        self,
        image: Image.Image,
        task: EditTask,
        prompt: Optional[str] = None,
        quality: float = STANDARD_QUALITY,
        target_size: Optional[Size] = None,
    ) -> Image.Image:
        self.calls.append(FakeCall(task, prompt, quality, target_size))
        index = min(len(self.calls), len(self._outcomes)) - 1
        outcome = self._outcomes[index]

        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise

        if isinstance(outcome, ProviderError) and outcome.provider is None:
            outcome.provider = self.provider_id
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return image.copy()
        return outcome

    async def aclose(self) -> None:
        self.closed = True
