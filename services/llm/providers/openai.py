import logging

from config.settings import settings
from services.llm.base import LLMProvider, LLMResponse, VisionRequest, load_image

log = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI vision models (gpt-4o family) via the chat completions API."""

    provider_name = "openai"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or settings.openai_api_key

    async def analyze_image(self, request: VisionRequest) -> LLMResponse:
        import openai

        client = openai.AsyncOpenAI(api_key=self.api_key, timeout=request.timeout)

        # Remote URLs are fetched by OpenAI directly; everything else goes inline
        if request.content_ref.startswith(("http://", "https://", "data:")):
            image_url = request.content_ref
        else:
            image_url = (await load_image(request.content_ref)).data_url

        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": request.prompt},
                    {"type": "image_url", "image_url": {"url": image_url, "detail": request.detail}},
                ],
            }
        )

        resp = await client.chat.completions.create(
            model=request.model,
            messages=messages,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            response_format={"type": "json_object"},
        )

        usage = {}
        if resp.usage:
            usage = {
                "prompt_tokens": resp.usage.prompt_tokens,
                "completion_tokens": resp.usage.completion_tokens,
            }
        return LLMResponse(
            content=resp.choices[0].message.content or "",
            model=request.model,
            provider=self.provider_name,
            usage=usage,
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)
