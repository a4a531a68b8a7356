"""
Provider adapters and registry.
"""

from .base import ProviderAdapter
from .clipdrop import ClipdropProvider
from .fakes import FakeProvider
from .fal_flux import FalFluxProvider
from .gemini import GeminiProvider
from .on_device import OnDeviceProvider
from .openai_images import OpenAIImageProvider
from .registry import ProviderRegistry

__all__ = [
    "ProviderAdapter",
    "ProviderRegistry",
    "OnDeviceProvider",
    "OpenAIImageProvider",
    "ClipdropProvider",
    "GeminiProvider",
    "FalFluxProvider",
    "FakeProvider",
]
