"""
Tier-based model selection.

Each complexity tier maps to a primary and a fallback model. Selection walks
primary -> fallback -> every configured model, asking an availability
predicate at each step, so a missing provider degrades gracefully instead
of failing the run.

Tier models come from the built-in defaults, then the ``models`` config
section, then env vars (highest wins)::

    WORKFLEET_MODEL_SIMPLE=claude-haiku-4-5
    WORKFLEET_MODEL_SIMPLE_FALLBACK=gpt-5.2
    WORKFLEET_MODEL_COMPLEX_TEMPERATURE=0.3
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from loguru import logger

from workfleet.core.exceptions import ConfigurationError

from .complexity import ComplexityScore, ComplexityScorer, ComplexityTier
from .models import Goal, WorkItem

if TYPE_CHECKING:
    from workfleet.core.config_schema import ModelsConfig

_ENV_PREFIX = "WORKFLEET_"


@dataclass(frozen=True)
class TierModels:
    primary: str
    fallback: str | None = None
    temperature: float = 0.2


DEFAULT_TIER_CONFIG: dict[ComplexityTier, TierModels] = {
    ComplexityTier.SIMPLE: TierModels("claude-haiku-4-5", "gpt-5.2", 0.2),
    ComplexityTier.MEDIUM: TierModels("claude-sonnet-4-5", "gpt-5.2", 0.2),
    ComplexityTier.COMPLEX: TierModels("claude-opus-4-5", "gpt-5.2", 0.3),
}


def load_model_tier_config(
    settings: ModelsConfig | None = None,
    env: Mapping[str, str] | None = None,
    env_prefix: str = _ENV_PREFIX,
) -> dict[ComplexityTier, TierModels]:
    """Merge defaults, config-file overrides and env overrides."""
    env = os.environ if env is None else env
    config = dict(DEFAULT_TIER_CONFIG)

    for tier in ComplexityTier:
        tier_models = config[tier]
        if settings is not None:
            section = getattr(settings, tier.value)
            tier_models = replace(
                tier_models,
                primary=section.primary or tier_models.primary,
                fallback=section.fallback if section.fallback is not None else tier_models.fallback,
                temperature=section.temperature if section.temperature is not None else tier_models.temperature,
            )

        key = f"{env_prefix}MODEL_{tier.value.upper()}"
        if env.get(key):
            tier_models = replace(tier_models, primary=env[key])
        if env.get(f"{key}_FALLBACK"):
            tier_models = replace(tier_models, fallback=env[f"{key}_FALLBACK"])
        if env.get(f"{key}_TEMPERATURE"):
            try:
                tier_models = replace(tier_models, temperature=float(env[f"{key}_TEMPERATURE"]))
            except ValueError as e:
                raise ConfigurationError(f"{key}_TEMPERATURE must be a number: {env[f'{key}_TEMPERATURE']!r}") from e

        config[tier] = tier_models
    return config


@dataclass
class ModelSelection:
    model: str
    tier: ComplexityTier
    complexity: ComplexityScore
    reasoning: str
    temperature: float = 0.2
    fallback_used: bool = False
    degraded: bool = False


class ModelSelector:
    """Maps complexity tiers to concrete models."""

    def __init__(
        self,
        tier_config: Mapping[ComplexityTier, TierModels] | None = None,
        scorer: ComplexityScorer | None = None,
        is_model_available: Callable[[str], bool] | None = None,
    ):
        self.tier_config = dict(tier_config or DEFAULT_TIER_CONFIG)
        missing = set(ComplexityTier) - set(self.tier_config)
        if missing:
            raise ConfigurationError(f"Tier config missing tiers: {sorted(missing)}")
        self.scorer = scorer or ComplexityScorer()
        self._is_available = is_model_available or (lambda _model: True)

    def select_model(self, work_item: WorkItem) -> ModelSelection:
        return self._select(self.scorer.score(work_item))

    def select_model_for_planning(self, goal: Goal) -> ModelSelection:
        return self._select(self.scorer.score_goal(goal))

    def get_tier_models(self, tier: ComplexityTier) -> TierModels:
        return self.tier_config[tier]

    def all_models(self) -> list[str]:
        """Every configured model, simple tier first, primary before fallback."""
        seen: list[str] = []
        for tier in ComplexityTier:
            tm = self.tier_config[tier]
            for model in (tm.primary, tm.fallback):
                if model and model not in seen:
                    seen.append(model)
        return seen

    def _select(self, complexity: ComplexityScore) -> ModelSelection:
        tier = complexity.tier
        tier_models = self.tier_config[tier]

        if self._is_available(tier_models.primary):
            return self._selection(tier_models.primary, complexity, tier_models.temperature)

        if tier_models.fallback and self._is_available(tier_models.fallback):
            logger.info(f"Primary model {tier_models.primary} unavailable, using fallback {tier_models.fallback}")
            return self._selection(tier_models.fallback, complexity, tier_models.temperature, fallback_used=True)

        for model in self.all_models():
            if model in (tier_models.primary, tier_models.fallback):
                continue
            if self._is_available(model):
                logger.warning(f"No {tier} tier model available, falling back to {model}")
                return self._selection(model, complexity, tier_models.temperature, fallback_used=True)

        logger.warning(f"No configured model is available; keeping {tier_models.primary} for {tier} tier")
        return self._selection(tier_models.primary, complexity, tier_models.temperature, degraded=True)

    @staticmethod
    def _selection(
        model: str,
        complexity: ComplexityScore,
        temperature: float,
        fallback_used: bool = False,
        degraded: bool = False,
    ) -> ModelSelection:
        return ModelSelection(
            model=model,
            tier=complexity.tier,
            complexity=complexity,
            reasoning=complexity.reasoning,
            temperature=temperature,
            fallback_used=fallback_used,
            degraded=degraded,
        )
