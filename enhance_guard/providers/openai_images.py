"""
OpenAI image edit adapter.

Sends the frame to the images edit endpoint and maps SDK exceptions onto
provider error kinds. Credit accounting is left to the router.
"""

import base64
import binascii
import logging
from typing import Optional

import openai
from PIL import Image

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

from .base import ProviderAdapter, Size, decode_image, encode_png, fit_to, require_prompt
from .http import parse_retry_after

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-image-1"


class OpenAIImageProvider(ProviderAdapter):
    """Budget-class cloud provider backed by the OpenAI images API."""

    provider_id = ProviderID.OPENAI
    cost_class = CostClass.BUDGET
    supported_tasks = frozenset({
        EditTask.SIMPLE_ENHANCE,
        EditTask.CLEANUP,
        EditTask.CREATIVE_EDIT,
        EditTask.CUSTOM_PROMPT,
    })
    max_image_pixels = 4096 * 4096

    def __init__(self, client: Optional["openai.AsyncOpenAI"] = None, model: str = DEFAULT_MODEL):
        """Initialize the adapter.

        Args:
            client: Preconfigured async client; created from the environment on first use
            model: Image model name
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> "openai.AsyncOpenAI":
        if self._client is None:
            self._client = openai.AsyncOpenAI()
        return self._client

    async def execute(
        self,
        image: Image.Image,
        task: EditTask,
        prompt: Optional[str] = None,
        quality: float = STANDARD_QUALITY,
        target_size: Optional[Size] = None,
    ) -> Image.Image:
        text = require_prompt(task, prompt, self.provider_id)

        try:
            response = await self.client.images.edit(
                model=self.model,
                image=("frame.png", encode_png(image), "image/png"),
                prompt=text,
                quality="high" if quality >= 0.9 else "medium",
            )
        except openai.RateLimitError as e:
            raise ProviderError.rate_limited(
                str(e), self.provider_id, parse_retry_after(e.response)
            ) from e
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise ProviderError.transient(str(e), self.provider_id) from e
        except openai.OpenAIError as e:
            raise ProviderError.permanent(str(e), self.provider_id) from e

        if not response.data or not response.data[0].b64_json:
            raise ProviderError.permanent("OpenAI response contained no image", self.provider_id)

        try:
            raw = base64.b64decode(response.data[0].b64_json)
        except (binascii.Error, ValueError) as e:
            raise ProviderError.permanent(f"Malformed image payload: {e}", self.provider_id) from e

        logger.debug("OpenAI returned %d bytes for %s", len(raw), task.value)
        return fit_to(decode_image(raw, self.provider_id), target_size)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None
