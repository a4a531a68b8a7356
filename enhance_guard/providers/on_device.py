"""
On-device enhancement with Pillow.

Free-cost provider used as the final fallback of a chain. Work runs in a
worker thread so the event loop stays responsive.
"""

import asyncio
import logging
from typing import Optional

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import STANDARD_QUALITY, CostClass, EditTask, ProviderID

from .base import ProviderAdapter, Size, fit_to

logger = logging.getLogger(__name__)


class OnDeviceProvider(ProviderAdapter):
    """Local processing: auto-enhance, cleanup and simple styles."""

    provider_id = ProviderID.ON_DEVICE
    cost_class = CostClass.FREE
    supported_tasks = frozenset({
        EditTask.SIMPLE_ENHANCE,
        EditTask.CLEANUP,
        EditTask.CREATIVE_EDIT,
    })

    async def execute(
        self,
        image: Image.Image,
        task: EditTask,
        prompt: Optional[str] = None,
        quality: float = STANDARD_QUALITY,
        target_size: Optional[Size] = None,
    ) -> Image.Image:
        if not self.supports(task):
            raise ProviderError.permanent(f"{task.value} is not supported on device", self.provider_id)
        logger.debug("Starting on-device %s", task.value)
        return await asyncio.to_thread(self._process, image, task, prompt, quality, target_size)

    def _process(
        self,
        image: Image.Image,
        task: EditTask,
        prompt: Optional[str],
        quality: float,
        target_size: Optional[Size],
    ) -> Image.Image:
        try:
            rgb = image.convert("RGB")
            if task is EditTask.SIMPLE_ENHANCE:
                result = auto_enhance(rgb, quality)
            elif task is EditTask.CLEANUP:
                result = cleanup(rgb)
            else:
                result = apply_style(rgb, prompt, quality)
            return fit_to(result, target_size)
        except (OSError, ValueError) as e:
            raise ProviderError.permanent(f"On-device processing failed: {e}", self.provider_id) from e


def auto_enhance(image: Image.Image, quality: float = STANDARD_QUALITY) -> Image.Image:
    """Stretch contrast, then lift colour and sharpness with quality."""
    result = ImageOps.autocontrast(image, cutoff=1)
    result = ImageEnhance.Color(result).enhance(1.0 + 0.15 * quality)
    return ImageEnhance.Sharpness(result).enhance(1.0 + 0.5 * quality)


def cleanup(image: Image.Image) -> Image.Image:
    """Remove speckle noise, then restore edge contrast."""
    result = image.filter(ImageFilter.MedianFilter(size=3))
    return result.filter(ImageFilter.UnsharpMask(radius=1, percent=30, threshold=2))


def apply_style(image: Image.Image, prompt: Optional[str], quality: float = STANDARD_QUALITY) -> Image.Image:
    """Pick a simple style from prompt keywords; plain enhance otherwise."""
    text = (prompt or "").lower()

    if "vintage" in text or "retro" in text:
        sepia = ImageOps.colorize(ImageOps.grayscale(image), black="#2e1f0f", white="#f5e6c8")
        return ImageEnhance.Contrast(sepia).enhance(0.9)
    if "dramatic" in text or "moody" in text:
        gray = ImageOps.grayscale(image).convert("RGB")
        return ImageEnhance.Contrast(gray).enhance(1.4)
    if "bright" in text or "cheerful" in text:
        result = ImageEnhance.Brightness(image).enhance(1.1)
        result = ImageEnhance.Color(result).enhance(1.2)
        return ImageEnhance.Contrast(result).enhance(1.1)
    if "warm" in text:
        return _tint(image, red=1.08, blue=0.92)
    if "cool" in text:
        return _tint(image, red=0.92, blue=1.08)
    return auto_enhance(image, quality)


def _tint(image: Image.Image, red: float, blue: float) -> Image.Image:
    r, g, b = image.split()
    r = r.point(lambda value: min(255, int(value * red)))
    b = b.point(lambda value: min(255, int(value * blue)))
    return Image.merge("RGB", (r, g, b))
