import logging
from collections.abc import Iterable

from config.settings import Settings

log = logging.getLogger(__name__)


class ModelAllowlist:
    """Immutable set of model identifiers the pipeline may call.

    Built once at startup from configuration and handed to the Dispatcher.
    """

    def __init__(self, allowed: Iterable[str], default_models: Iterable[str] = ()):
        self._allowed = frozenset(m.strip() for m in allowed if m and m.strip())
        self._defaults = tuple(default_models)
        if not self._allowed:
            log.error("Model allowlist is empty; every analysis job will fail without provider calls")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelAllowlist":
        return cls(settings.model_allowlist, settings.default_models)

    def is_model_allowed(self, model_id: str) -> bool:
        return model_id in self._allowed

    def default_models(self) -> list[str]:
        """The configured fallback order. Entries still go through filter()."""
        return list(self._defaults)

    def filter(self, candidates: Iterable[str]) -> tuple[list[str], list[str]]:
        """Split candidates into (allowed, skipped), keeping order and dropping repeats."""
        allowed, skipped, seen = [], [], set()
        for model in candidates:
            if model in seen:
                continue
            seen.add(model)
            (allowed if self.is_model_allowed(model) else skipped).append(model)
        return allowed, skipped

    @property
    def models(self) -> list[str]:
        return sorted(self._allowed)

    def __len__(self) -> int:
        return len(self._allowed)

    def __contains__(self, model_id: str) -> bool:
        return self.is_model_allowed(model_id)
