"""
fal.ai FLUX image-to-image adapter.
"""

import base64
import logging
import os
from typing import Optional

import httpx
from PIL import Image

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

from .base import ProviderAdapter, Size, decode_image, encode_png, fit_to, require_prompt
from .http import new_client, read_json, send

logger = logging.getLogger(__name__)

BASE_URL = "https://fal.run"
DEFAULT_MODEL = "fal-ai/flux/dev/image-to-image"
API_KEY_ENV = "FAL_KEY"


class FalFluxProvider(ProviderAdapter):
    """Budget-class provider for enhancement and styling."""

    provider_id = ProviderID.FAL_FLUX
    cost_class = CostClass.BUDGET
    supported_tasks = frozenset({
        EditTask.SIMPLE_ENHANCE,
        EditTask.CREATIVE_EDIT,
        EditTask.CUSTOM_PROMPT,
    })
    max_image_pixels = 16_000_000

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        model: str = DEFAULT_MODEL,
        base_url: str = BASE_URL,
    ):
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        if not self.api_key:
            raise ValueError(f"fal.ai API key is required (set {API_KEY_ENV})")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = new_client()
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

        encoded = base64.b64encode(encode_png(image)).decode("ascii")
        # Light touch for enhancement, stronger for restyling
        strength = 0.35 if task is EditTask.SIMPLE_ENHANCE else 0.75
        response = await send(
            self.client,
            "POST",
            f"{self.base_url}/{self.model}",
            self.provider_id,
            headers={"Authorization": f"Key {self.api_key}"},
            json={
                "image_url": f"data:image/png;base64,{encoded}",
                "prompt": text,
                "strength": strength,
                "num_inference_steps": 40 if quality >= 0.9 else 28,
                "num_images": 1,
            },
        )

        images = read_json(response, self.provider_id).get("images")
        first = images[0] if isinstance(images, list) and images else None
        url = first.get("url") if isinstance(first, dict) else None
        if not url or not isinstance(url, str):
            raise ProviderError.permanent("fal.ai response contained no image", self.provider_id)

        raw = await self._download(url)
        logger.debug("fal.ai returned %d bytes for %s", len(raw), task.value)
        return fit_to(decode_image(raw, self.provider_id), target_size)

    async def _download(self, url: str) -> bytes:
        if url.startswith("data:"):
            try:
                return base64.b64decode(url.split(",", 1)[1])
            except (IndexError, ValueError) as e:
                raise ProviderError.permanent(f"Malformed data URI: {e}", self.provider_id) from e
        response = await send(self.client, "GET", url, self.provider_id)
        return response.content

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
