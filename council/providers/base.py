"""Abstract base for all AI model providers."""

from abc import ABC, abstractmethod

from council.models import ProviderResponse


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the default model identifier string."""
        ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        context: str | None = None,
    ) -> ProviderResponse:
        """Generate a response for the given prompt.

        Args:
            prompt: The full prompt text to send.
            model: Model override; defaults to the configured model.
            context: Optional conversation context, sent as a system message.

        Returns:
            ProviderResponse with success=True, normalized content and token usage.

        Raises:
            ProviderError: On API failure, client-side timeout, or empty response.
        """
        ...
