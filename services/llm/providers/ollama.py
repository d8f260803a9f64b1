import logging

import httpx

from config.settings import settings
from services.llm.base import LLMProvider, LLMResponse, VisionRequest, load_image

log = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Local Ollama provider for vision models such as qwen2.5-vl, no data leaves your machine."""

    provider_name = "ollama"

    def __init__(self, base_url: str | None = None):
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")

    async def analyze_image(self, request: VisionRequest) -> LLMResponse:
        image = await load_image(request.content_ref, timeout=request.timeout)

        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt, "images": [image.data_b64]})

        async with httpx.AsyncClient(timeout=request.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/api/chat",
                json={
                    "model": request.model,
                    "messages": messages,
                    "stream": False,
                    "format": "json",
                    "options": {
                        "temperature": request.temperature,
                        "num_predict": request.max_tokens,
                    },
                },
            )
            resp.raise_for_status()
            data = resp.json()

        return LLMResponse(
            content=data["message"]["content"],
            model=request.model,
            provider=self.provider_name,
            usage={
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
            },
            raw=data,
        )

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
