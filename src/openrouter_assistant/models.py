"""
Model registry: the ordered table of upstream models this assistant may use.

The configured list is resolved once at startup. Which models are eligible for
a given request is a per-call view: blocked models are filtered out and the
first survivor is tagged primary.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import AssistantConfig
    from .quota_guard import QuotaGuard


class ModelRole(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    role: ModelRole = ModelRole.FALLBACK
    description: str = ""
    is_free: bool = False


PRIMARY_MODEL_ID = "z-ai/glm-4.5-air:free"

DEFAULT_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id=PRIMARY_MODEL_ID,
        display_name="GLM 4.5 Air",
        role=ModelRole.PRIMARY,
        description="Primary AI model (free and fast)",
        is_free=True,
    ),
    ModelDescriptor(
        id="google/gemini-2.0-flash-exp:free",
        display_name="Gemini 2.0 Flash",
        description="Fast general model with a large context window",
        is_free=True,
    ),
    ModelDescriptor(
        id="meta-llama/llama-3.3-70b-instruct:free",
        display_name="Llama 3.3 70B Instruct",
        description="Strong open-weights fallback",
        is_free=True,
    ),
    ModelDescriptor(
        id="mistralai/mistral-7b-instruct:free",
        display_name="Mistral 7B Instruct",
        description="Small, widely available last resort",
        is_free=True,
    ),
)

_KNOWN_MODELS = {m.id: m for m in DEFAULT_MODELS}


def descriptor_for_id(model_id: str) -> ModelDescriptor:
    """Metadata for a configured id, derived from the id when it is not a known default."""
    known = _KNOWN_MODELS.get(model_id)
    if known is not None:
        return known
    name = model_id.split("/", 1)[-1].split(":", 1)[0]
    return ModelDescriptor(
        id=model_id,
        display_name=name or model_id,
        description="Configured model",
        is_free=model_id.endswith(":free"),
    )


def _dedupe(models: Iterable[ModelDescriptor]) -> list[ModelDescriptor]:
    seen: set[str] = set()
    out: list[ModelDescriptor] = []
    for m in models:
        if m.id in seen:
            continue
        seen.add(m.id)
        out.append(m)
    return out


def _with_roles(models: Sequence[ModelDescriptor]) -> list[ModelDescriptor]:
    return [
        replace(m, role=ModelRole.PRIMARY if i == 0 else ModelRole.FALLBACK) for i, m in enumerate(models)
    ]


class ModelRegistry:
    def __init__(self, models: Iterable[ModelDescriptor] | None = None, *, quota_guard: QuotaGuard | None = None):
        resolved = _dedupe(models or ())
        self._models: tuple[ModelDescriptor, ...] = tuple(_with_roles(resolved or DEFAULT_MODELS))
        self._by_id = {m.id: m for m in self._models}
        self._quota_guard = quota_guard

    @classmethod
    def from_config(cls, cfg: AssistantConfig, *, quota_guard: QuotaGuard | None = None) -> ModelRegistry:
        models = [
            ModelDescriptor(
                id=spec.id,
                display_name=spec.display_name or descriptor_for_id(spec.id).display_name,
                description=spec.description or descriptor_for_id(spec.id).description,
                is_free=spec.is_free if spec.is_free is not None else descriptor_for_id(spec.id).is_free,
            )
            for spec in cfg.models
        ]
        return cls(models, quota_guard=quota_guard)

    def all_models(self) -> list[ModelDescriptor]:
        return list(self._models)

    def get_model_pool(self) -> list[ModelDescriptor]:
        guard = self._quota_guard
        eligible = [m for m in self._models if guard is None or not guard.is_blocked(m.id)]
        return _with_roles(eligible)

    def get_model_by_id(self, model_id: str) -> ModelDescriptor | None:
        return self._by_id.get(model_id)

    def display_name(self, model_id: str) -> str:
        m = self.get_model_by_id(model_id)
        return m.display_name if m is not None else model_id

    def candidate_ids(self, preferred_model: str | None = None) -> list[str]:
        pool = [m.id for m in self.get_model_pool()]
        if not preferred_model:
            return pool
        if self._quota_guard is not None and self._quota_guard.is_blocked(preferred_model):
            return pool
        return [preferred_model, *(m for m in pool if m != preferred_model)]
