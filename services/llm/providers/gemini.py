import base64
import logging

from config.settings import settings
from services.llm.base import LLMProvider, LLMResponse, VisionRequest, load_image

log = logging.getLogger(__name__)


class GeminiProvider(LLMProvider):
    """Google Gemini provider. Multimodal, accepts inline image bytes."""

    provider_name = "gemini"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or settings.gemini_api_key

    async def analyze_image(self, request: VisionRequest) -> LLMResponse:
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        image = await load_image(request.content_ref, timeout=request.timeout)

        gen_model = genai.GenerativeModel(
            model_name=request.model,
            system_instruction=request.system if request.system else None,
        )

        response = await gen_model.generate_content_async(
            [
                {"mime_type": image.media_type, "data": base64.b64decode(image.data_b64)},
                request.prompt,
            ],
            generation_config=genai.types.GenerationConfig(
                temperature=request.temperature,
                max_output_tokens=request.max_tokens,
                response_mime_type="application/json",
            ),
            request_options={"timeout": request.timeout},
        )

        return LLMResponse(
            content=response.text,
            model=request.model,
            provider=self.provider_name,
            usage={},
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)
