"""
Clipdrop adapter.

Background removal and text/blemish cleanup over Clipdrop's multipart HTTP
API.
"""

import logging
import os
from typing import Dict, Optional

import httpx
from PIL import Image

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

from .base import ProviderAdapter, Size, decode_image, encode_png, fit_to
from .http import new_client, send

logger = logging.getLogger(__name__)

BASE_URL = "https://clipdrop-api.co"
API_KEY_ENV = "CLIPDROP_API_KEY"

ENDPOINTS: Dict[EditTask, str] = {
    EditTask.BACKGROUND_REMOVAL: "/remove-background/v1",
    EditTask.CLEANUP: "/remove-text/v1",
}


class ClipdropProvider(ProviderAdapter):
    """Budget-class cloud provider for background removal and cleanup."""

    provider_id = ProviderID.CLIPDROP
    cost_class = CostClass.BUDGET
    supported_tasks = frozenset(ENDPOINTS)
    max_image_pixels = 25_000_000

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = BASE_URL,
    ):
        """Initialize the adapter.

        Args:
            api_key: Clipdrop API key; read from CLIPDROP_API_KEY when omitted
            client: Shared HTTP client; one is created on first use otherwise
            base_url: API root, overridable for testing

        Raises:
            ValueError: If no API key is configured
        """
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        if not self.api_key:
            raise ValueError(f"Clipdrop API key is required (set {API_KEY_ENV})")
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
        endpoint = ENDPOINTS.get(task)
        if endpoint is None:
            raise ProviderError.permanent(f"{task.value} is not supported by Clipdrop", self.provider_id)

        response = await send(
            self.client,
            "POST",
            f"{self.base_url}{endpoint}",
            self.provider_id,
            headers={"x-api-key": self.api_key},
            files={"image_file": ("frame.png", encode_png(image), "image/png")},
        )
        logger.debug(
            "Clipdrop %s ok, %s credits remaining",
            task.value,
            response.headers.get("x-remaining-credits", "?"),
        )
        return fit_to(decode_image(response.content, self.provider_id), target_size)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
