"""
LLM Provider — Abstract Interface

All upstream model calls go through this interface. Providers return
the raw response text and raise on failure; classification and retry
live in ragebaiter.analyzer, not here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class LLMProvider(ABC):
    """Abstract base for LLM providers."""

    name: str = "llm"

    @property
    @abstractmethod
    def has_credentials(self) -> bool:
        """True when an API key is configured."""
        ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.0,
        json_mode: bool = True,
    ) -> str:
        """Generate a text response from the LLM."""
        ...
