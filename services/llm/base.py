import base64
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import httpx


@dataclass
class LLMResponse:
    content: str
    model: str
    provider: str
    usage: dict = field(default_factory=dict)
    raw: dict | None = None


@dataclass
class VisionRequest:
    """The fixed request contract sent to every vision model."""

    content_ref: str  # http(s) URL, data: URL or local path
    prompt: str
    model: str
    system: str = ""
    detail: str = "auto"  # low | high | auto
    temperature: float = 0.3
    max_tokens: int = 1024
    timeout: float = 60.0


@dataclass
class ImagePayload:
    media_type: str
    data_b64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data_b64}"


class LLMProvider(ABC):
    """Base class for all vision-capable LLM providers."""

    provider_name: str = "base"

    @abstractmethod
    async def analyze_image(self, request: VisionRequest) -> LLMResponse: ...

    @abstractmethod
    async def is_available(self) -> bool: ...


async def load_image(content_ref: str, timeout: float = 30.0) -> ImagePayload:
    """Resolve a content reference into base64 image bytes.

    Remote URLs are downloaded; data: URLs are split; anything else is a path.
    """
    if content_ref.startswith("data:"):
        header, _, data = content_ref.partition(",")
        media_type = header[5:].split(";")[0] or "image/jpeg"
        return ImagePayload(media_type=media_type, data_b64=data)

    if content_ref.startswith(("http://", "https://")):
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(content_ref)
            resp.raise_for_status()
        media_type = resp.headers.get("content-type", "").split(";")[0] or _guess_type(content_ref)
        return ImagePayload(media_type=media_type, data_b64=base64.b64encode(resp.content).decode("ascii"))

    path = Path(content_ref)
    if not path.is_file():
        raise FileNotFoundError(f"Image not found: {content_ref}")
    return ImagePayload(
        media_type=_guess_type(content_ref),
        data_b64=base64.b64encode(path.read_bytes()).decode("ascii"),
    )


def _guess_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed if guessed and guessed.startswith("image/") else "image/jpeg"
