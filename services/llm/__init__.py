from services.llm.router import LLMRouter

# Process-wide router built from settings; tests and build_pipeline may pass their own
llm_router = LLMRouter()

__all__ = ["LLMRouter", "llm_router"]
