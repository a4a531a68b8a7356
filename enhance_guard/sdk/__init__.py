"""
SDK for enhance-guard.

Provides programmatic access to credit-aware photo enhancement.
"""

from .session import EnhancementSession, build_default_registry, build_session

__all__ = ["EnhancementSession", "build_default_registry", "build_session"]
