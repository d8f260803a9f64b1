import asyncio
import logging

from config.settings import LLMProvider as ProviderName
from config.settings import settings
from services.analysis.errors import ProviderError
from services.llm.base import LLMProvider, LLMResponse, VisionRequest
from services.llm.providers.claude import ClaudeProvider
from services.llm.providers.gemini import GeminiProvider
from services.llm.providers.ollama import OllamaProvider
from services.llm.providers.openai import OpenAIProvider

log = logging.getLogger(__name__)

# Model id prefix -> provider, checked in order
MODEL_PREFIXES = [
    ("gpt-", ProviderName.OPENAI),
    ("chatgpt-", ProviderName.OPENAI),
    ("o1", ProviderName.OPENAI),
    ("o3", ProviderName.OPENAI),
    ("o4", ProviderName.OPENAI),
    ("claude-", ProviderName.CLAUDE),
    ("gemini-", ProviderName.GEMINI),
]


class LLMRouter:
    """Routes a vision request to the provider that serves the requested model.

    The Dispatcher only ever talks to the router, so providers are swappable:
    anything returning an LLMResponse whose content matches the validator's
    accepted shapes will do.
    """

    def __init__(
        self,
        providers: dict[str, LLMProvider] | None = None,
        model_providers: dict[str, str] | None = None,
    ):
        self._providers: dict[str, LLMProvider] = {}
        self._model_providers = dict(settings.model_providers if model_providers is None else model_providers)
        if providers is None:
            self._init_providers()
        else:
            self._providers.update(providers)

    def _init_providers(self):
        self._providers["ollama"] = OllamaProvider()
        if settings.openai_api_key:
            self._providers["openai"] = OpenAIProvider()
        if settings.claude_api_key:
            self._providers["claude"] = ClaudeProvider()
        if settings.gemini_api_key:
            self._providers["gemini"] = GeminiProvider()

    def provider_name_for_model(self, model: str) -> str:
        if model in self._model_providers:
            return str(self._model_providers[model])
        for prefix, name in MODEL_PREFIXES:
            if model.startswith(prefix):
                return name.value
        return ProviderName.OLLAMA.value

    def get_provider(self, model: str) -> LLMProvider:
        name = self.provider_name_for_model(model)
        if name not in self._providers:
            available = list(self._providers.keys())
            raise ProviderError(f"Provider '{name}' for model '{model}' not configured. Available: {available}")
        return self._providers[name]

    async def analyze_image(self, request: VisionRequest) -> LLMResponse:
        """Send one vision request, bounded by request.timeout.

        Any failure surfaces as ProviderError so callers can treat all
        transport problems alike.
        """
        p = self.get_provider(request.model)
        log.info(f"Routing to {p.provider_name} (model={request.model}, detail={request.detail})")
        try:
            return await asyncio.wait_for(p.analyze_image(request), timeout=request.timeout)
        except ProviderError:
            raise
        except TimeoutError as e:
            raise ProviderError(f"{p.provider_name} timed out after {request.timeout}s") from e
        except Exception as e:
            raise ProviderError(f"{p.provider_name} call failed: {type(e).__name__}: {e}") from e

    async def health(self) -> dict:
        result = {}
        for name, provider in self._providers.items():
            result[name] = await provider.is_available()
        return result
