"""
Gemini image model adapter.

Premium-class provider. Calls the ``generateContent`` REST endpoint with the
frame inlined and reads the first image part of the reply.
"""

import base64
import binascii
import logging
import os
from typing import List, Optional

import httpx
from PIL import Image

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

from .base import ProviderAdapter, Size, decode_image, encode_png, fit_to, require_prompt
from .http import new_client, read_json, send

logger = logging.getLogger(__name__)

BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash-image"
API_KEY_ENV = "GEMINI_API_KEY"


class GeminiProvider(ProviderAdapter):
    """Highest quality provider; serves every task."""

    provider_id = ProviderID.GEMINI
    cost_class = CostClass.PREMIUM
    supported_tasks = frozenset(EditTask)
    max_image_pixels = 20_000_000

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        model: str = DEFAULT_MODEL,
        base_url: str = BASE_URL,
    ):
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        if not self.api_key:
            raise ValueError(f"Gemini API key is required (set {API_KEY_ENV})")
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

        payload = {
            "contents": [{
                "parts": [
                    {"text": text},
                    {"inline_data": {
                        "mime_type": "image/png",
                        "data": base64.b64encode(encode_png(image)).decode("ascii"),
                    }},
                ],
            }],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        response = await send(
            self.client,
            "POST",
            f"{self.base_url}/models/{self.model}:generateContent",
            self.provider_id,
            headers={"x-goog-api-key": self.api_key},
            json=payload,
        )

        raw = _first_image_part(read_json(response, self.provider_id), self.provider_id)
        logger.debug("Gemini returned %d bytes for %s", len(raw), task.value)
        return fit_to(decode_image(raw, self.provider_id), target_size)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _first_image_part(body: dict, provider: ProviderID) -> bytes:
    """Extract the first inline image of a generateContent reply.

    Raises:
        ProviderError: Permanent, if the reply holds no image (e.g. blocked)
    """
    for candidate in _objects(body.get("candidates")):
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in _objects(parts):
            inline = part.get("inlineData") or part.get("inline_data")
            data = inline.get("data") if isinstance(inline, dict) else None
            if data and isinstance(data, str):
                try:
                    return base64.b64decode(data)
                except (binascii.Error, ValueError) as e:
                    raise ProviderError.permanent(f"Malformed image payload: {e}", provider) from e

    feedback = body.get("promptFeedback")
    reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
    detail = f" (blocked: {reason})" if reason else ""
    raise ProviderError.permanent(f"Gemini response contained no image{detail}", provider)


def _objects(value) -> List[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
