import logging

from config.settings import settings
from services.llm.base import LLMProvider, LLMResponse, VisionRequest, load_image

log = logging.getLogger(__name__)


class ClaudeProvider(LLMProvider):
    """Anthropic Claude provider with image input."""

    provider_name = "claude"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or settings.claude_api_key

    async def analyze_image(self, request: VisionRequest) -> LLMResponse:
        import anthropic

        client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=request.timeout)
        image = await load_image(request.content_ref, timeout=request.timeout)

        kwargs = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {"type": "base64", "media_type": image.media_type, "data": image.data_b64},
                        },
                        {"type": "text", "text": request.prompt},
                    ],
                }
            ],
        }
        if request.system:
            kwargs["system"] = request.system

        message = await client.messages.create(**kwargs)

        return LLMResponse(
            content=message.content[0].text,
            model=request.model,
            provider=self.provider_name,
            usage={
                "prompt_tokens": message.usage.input_tokens,
                "completion_tokens": message.usage.output_tokens,
            },
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)
