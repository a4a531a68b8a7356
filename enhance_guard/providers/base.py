"""
Provider adapter contract.

Every backend, on-device or cloud, implements ``ProviderAdapter``. Adapters
know nothing about credits: they either return an image or raise
``ProviderError``.
"""

from abc import ABC, abstractmethod
from io import BytesIO
from typing import FrozenSet, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

Size = Tuple[int, int]


class ProviderAdapter(ABC):
    """Capability-tagged enhancement backend."""

    provider_id: ProviderID
    cost_class: CostClass
    supported_tasks: FrozenSet[EditTask] = frozenset()
    # Largest input (width * height) the backend accepts; None means no limit
    max_image_pixels: Optional[int] = None

    def capabilities(self) -> FrozenSet[EditTask]:
        """Tasks this provider can serve."""
        return self.supported_tasks

    def supports(self, task: EditTask) -> bool:
        return task in self.capabilities()

    def accepts_size(self, image_size: Optional[Size]) -> bool:
        if self.max_image_pixels is None or image_size is None:
            return True
        return image_size[0] * image_size[1] <= self.max_image_pixels

    @abstractmethod
    async def execute(
        self,
        image: Image.Image,
        task: EditTask,
        prompt: Optional[str] = None,
        quality: float = STANDARD_QUALITY,
        target_size: Optional[Size] = None,
    ) -> Image.Image:
        """Run one enhancement.

        Args:
            image: Input frame
            task: Task to perform; always one of ``capabilities()``
            prompt: Optional free-text instruction
            quality: Requested quality in [0, 1]
            target_size: Optional output size

        Returns:
            The enhanced image

        Raises:
            ProviderError: On any failure, tagged transient, permanent or rate limited
        """
        ...

    async def aclose(self) -> None:
        """Release network clients the adapter created itself."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_id.value}, {self.cost_class.value})"


def encode_png(image: Image.Image) -> bytes:
    """Encode an image as PNG for upload."""
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def decode_image(data: bytes, provider: Optional[ProviderID] = None) -> Image.Image:
    """Decode a provider response body.

    Raises:
        ProviderError: Permanent, if the body is not an image
    """
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ProviderError.permanent(f"Undecodable image in response: {e}", provider) from e
    return image


def fit_to(image: Image.Image, target_size: Optional[Size]) -> Image.Image:
    """Resize to ``target_size`` if one was requested."""
    if target_size is None or image.size == tuple(target_size):
        return image
    return image.resize(tuple(target_size), Image.LANCZOS)


TASK_PROMPTS = {
    EditTask.SIMPLE_ENHANCE: (
        "Enhance this photo: improve exposure, colour balance and sharpness "
        "while keeping it natural and realistic."
    ),
    EditTask.BACKGROUND_REMOVAL: (
        "Remove the background of this photo and keep only the main subject "
        "on a transparent background."
    ),
    EditTask.CLEANUP: (
        "Clean up this photo: remove dust, noise and small blemishes without "
        "changing the subject."
    ),
    EditTask.CREATIVE_EDIT: "Apply a tasteful creative style to this photo.",
}


def build_prompt(task: EditTask, prompt: Optional[str]) -> str:
    """Combine the task's base instruction with the user's prompt."""
    base = TASK_PROMPTS.get(task, "")
    extra = (prompt or "").strip()
    if base and extra:
        return f"{base} {extra}"
    return base or extra


def require_prompt(task: EditTask, prompt: Optional[str], provider: ProviderID) -> str:
    """``build_prompt``, refusing tasks that need user text and got none.

    Raises:
        ProviderError: Permanent, if the task requires a prompt and none was given
    """
    text = build_prompt(task, prompt)
    if not text or (task.requires_prompt and not (prompt or "").strip()):
        raise ProviderError.permanent(f"A prompt is required for {task.value}", provider)
    return text
