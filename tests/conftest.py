import json
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config.settings import Settings
from services.analysis.pipeline import build_pipeline
from services.database import init_db, register_photo
from services.llm.base import LLMProvider, LLMResponse, VisionRequest
from services.llm.router import LLMRouter

ALLOWED = ["gpt-vision-a", "vision-b"]
CAT = json.dumps({"caption": "A cat", "keywords": "cat, pet, animal"})


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeProvider(LLMProvider):
    """Scripted vision provider.

    script maps model -> outcome. An outcome is a str (returned as content),
    an Exception (raised), an async callable taking the request, or a list of
    those consumed one per call (the last one repeats).
    """

    provider_name = "fake"

    def __init__(self, script: dict | None = None, default=CAT):
        self.script = script or {}
        self.default = default
        self.calls: list[str] = []
        self.requests: list[VisionRequest] = []

    async def analyze_image(self, request: VisionRequest) -> LLMResponse:
        self.calls.append(request.model)
        self.requests.append(request)
        outcome = self.script.get(request.model, self.default)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            outcome = await outcome(request)
        return LLMResponse(content=outcome, model=request.model, provider=self.provider_name)

    async def is_available(self) -> bool:
        return True


def make_settings(**overrides) -> Settings:
    values = dict(
        model_allowlist=list(ALLOWED),
        default_models=list(ALLOWED),
        model_providers={},
        max_retries=3,
        backoff_base_seconds=0,
        backoff_cap_seconds=0,
        provider_timeout_seconds=5,
        lease_timeout_seconds=30,
        pool_size=2,
        poll_interval_seconds=0.01,
        reaper_interval_seconds=0.05,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def router(fake_provider):
    providers = {name: fake_provider for name in ("openai", "claude", "gemini", "ollama")}
    return LLMRouter(providers=providers, model_providers={})


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'photos.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_pipeline(session_factory, router, clock):
    def _factory(**overrides):
        return build_pipeline(make_settings(**overrides), session_factory=session_factory, router=router, clock=clock)

    return _factory


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def add_photo(session_factory):
    async def _add(photo_id: str, content_ref: str = "data:image/jpeg;base64,AAAA"):
        async with session_factory() as session:
            return await register_photo(session, photo_id, content_ref)

    return _add
