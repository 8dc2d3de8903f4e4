"""
Tier/provider registry for Tier Router.

Holds the static catalog of (tier, provider) → model configuration and
resolves it against per-client overrides, pinned versions and allowed
providers. Also provides cost estimation and a budget-aware tier
recommendation for capacity planning.
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import ClientConfig, Config
from .errors import ConfigurationError
from .tiers import TIER_ORDER, AnyTaskType, TaskType, Tier, parse_task_type

_log = logging.getLogger(__name__)

# Representative request used by recommend_tier() for budget checks.
REPRESENTATIVE_INPUT_TOKENS = 2000
REPRESENTATIVE_OUTPUT_TOKENS = 1000

COMPLEXITY_LABELS = {'low': Tier.ECONOMY, 'medium': Tier.STANDARD, 'high': Tier.PREMIUM}
QUALITY_LABELS = {'draft': Tier.ECONOMY, 'standard': Tier.STANDARD, 'premium': Tier.PREMIUM}

# Task types that never go below standard / rarely need premium.
DEMANDING_TASKS = {TaskType.STRATEGY, TaskType.ANALYSIS, TaskType.LONG_FORM, TaskType.CODE}
LIGHT_TASKS = {TaskType.HASHTAGS, TaskType.CLASSIFICATION, TaskType.EXTRACTION}


@dataclass(frozen=True)
class FallbackEntry:
    """One alternative (tier, provider, model) tried after the primary fails."""
    tier: Tier
    provider: str
    model: str

    def to_dict(self) -> Dict[str, str]:
        return {'tier': self.tier.value, 'provider': self.provider, 'model': self.model}


@dataclass
class ModelConfig:
    """Model configuration for one (tier, provider) catalog slot."""
    tier: Tier
    provider: str
    model: str
    version: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7
    context_window: int = 128000
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0
    fallback_chain: List[FallbackEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.tier = Tier.parse(self.tier)
        if self.cost_per_1k_input < 0 or self.cost_per_1k_output < 0:
            raise ValueError(
                f"Cost rates must be >= 0 for {self.tier.value}/{self.provider}"
            )
        if self.max_tokens <= 0 or self.context_window <= 0:
            raise ValueError(
                f"Token limits must be > 0 for {self.tier.value}/{self.provider}"
            )
        own = FallbackEntry(self.tier, self.provider, self.model)
        self.fallback_chain = [e for e in self.fallback_chain if e != own]

    @property
    def entry(self) -> FallbackEntry:
        """This configuration as a (tier, provider, model) triple."""
        return FallbackEntry(self.tier, self.provider, self.model)

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Calculate cost for given token usage.

        Args:
            input_tokens: Number of input tokens
            output_tokens: Number of output tokens

        Returns:
            Total cost in dollars
        """
        input_cost = (input_tokens / 1000) * self.cost_per_1k_input
        output_cost = (output_tokens / 1000) * self.cost_per_1k_output
        return input_cost + output_cost

    @classmethod
    def from_dict(cls, tier: Union[Tier, str], provider: str,
                  data: Dict[str, Any]) -> "ModelConfig":
        """Build a config from a raw catalog entry."""
        chain = [
            FallbackEntry(Tier.parse(fb['tier']), fb['provider'], fb['model'])
            for fb in data.get('fallback', [])
        ]
        return cls(
            tier=Tier.parse(tier),
            provider=provider,
            model=data['model'],
            version=data.get('version', ''),
            max_tokens=data.get('max_tokens', 4096),
            temperature=data.get('temperature', 0.7),
            context_window=data.get('context_window', 128000),
            cost_per_1k_input=data.get('cost_per_1k_input', 0.0),
            cost_per_1k_output=data.get('cost_per_1k_output', 0.0),
            fallback_chain=chain,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'version': self.version,
            'max_tokens': self.max_tokens,
            'temperature': self.temperature,
            'context_window': self.context_window,
            'cost_per_1k_input': self.cost_per_1k_input,
            'cost_per_1k_output': self.cost_per_1k_output,
            'fallback': [e.to_dict() for e in self.fallback_chain],
        }


# Fields a client may override per tier.
OVERRIDABLE_FIELDS = {
    f.name for f in fields(ModelConfig)
} - {'tier', 'provider', 'fallback_chain'}


class TierRegistry:
    """Catalog of model configurations keyed by (tier, provider)."""

    def __init__(self, config: Optional[Config] = None):
        """Initialize the registry.

        Args:
            config: Configuration with catalog definitions. Uses the packaged
                defaults when omitted.

        Raises:
            ConfigurationError: If a catalog entry is malformed.
        """
        self.config = config if config is not None else Config()
        self.default_provider = self.config.get_default_provider()
        self.models = self._load_models(self.config.get_catalog())

    def _load_models(self, catalog: Dict[str, Dict[str, Dict[str, Any]]]
                     ) -> Dict[Tuple[Tier, str], ModelConfig]:
        """Load models from raw catalog data.

        Returns:
            Dictionary mapping (tier, provider) to ModelConfig objects
        """
        models = {}
        for tier_name, by_provider in catalog.items():
            for provider, raw in by_provider.items():
                try:
                    model = ModelConfig.from_dict(tier_name, provider, raw)
                except (KeyError, TypeError, ValueError) as exc:
                    raise ConfigurationError(
                        f"Malformed catalog entry {tier_name}/{provider}: {exc}",
                        {'tier': tier_name, 'provider': provider},
                    ) from exc
                models[(model.tier, provider)] = model
        return models

    # ── Lookup ────────────────────────────────────────────────────────────

    def has(self, tier: Union[Tier, str], provider: str) -> bool:
        return (Tier.parse(tier), provider) in self.models

    def get(self, tier: Union[Tier, str], provider: str) -> ModelConfig:
        """Return the base catalog entry for ``(tier, provider)``.

        Raises:
            ConfigurationError: If the pair is not in the catalog.
        """
        try:
            key = (Tier.parse(tier), provider)
        except ValueError as exc:
            raise ConfigurationError(str(exc), {'tier': tier, 'provider': provider}) from exc
        model = self.models.get(key)
        if model is None:
            raise ConfigurationError(
                f"No model configured for tier {key[0].value!r} and provider {provider!r}",
                {'tier': key[0].value, 'provider': provider},
            )
        return model

    def list_models(self) -> List[ModelConfig]:
        """Get all registered models, premium first."""
        return sorted(self.models.values(), key=lambda m: (-m.tier.rank, m.provider))

    def providers(self) -> List[str]:
        """Get list of all providers in the catalog."""
        return sorted({provider for _, provider in self.models})

    def providers_for_tier(self, tier: Union[Tier, str]) -> List[str]:
        tier = Tier.parse(tier)
        return sorted(provider for t, provider in self.models if t == tier)

    def register(self, model_config: ModelConfig) -> None:
        """Add or replace the catalog entry for the config's (tier, provider)."""
        self.models[(model_config.tier, model_config.provider)] = model_config
        self.config.set_catalog_entry(
            model_config.tier.value, model_config.provider, model_config.to_dict()
        )

    def remove(self, tier: Union[Tier, str], provider: str) -> bool:
        """Remove a catalog entry.

        Returns:
            True if the entry was removed, False if not found
        """
        key = (Tier.parse(tier), provider)
        if key in self.models:
            del self.models[key]
            return self.config.remove_catalog_entry(key[0].value, provider)
        return False

    # ── Resolution ────────────────────────────────────────────────────────

    def resolve(self, tier: Union[Tier, str], provider: str,
                client_config: Optional[ClientConfig] = None) -> ModelConfig:
        """Resolve the effective model configuration for a client.

        The base catalog entry is copied, then the client's per-tier field
        overrides are applied (override wins), a pinned version for the
        provider replaces the model id, and the fallback chain is extended
        with one same-tier entry per additional allowed provider.

        Args:
            tier: Requested tier.
            provider: Requested provider.
            client_config: Optional client settings.

        Returns:
            A new ModelConfig; the catalog is never mutated.

        Raises:
            ConfigurationError: For an unknown (tier, provider) pair or an
                override naming a field that does not exist.
        """
        base = self.get(tier, provider)
        resolved = replace(base, fallback_chain=list(base.fallback_chain))
        if client_config is None:
            return resolved

        overrides = client_config.tier_overrides.get(resolved.tier, {})
        if overrides:
            unknown = set(overrides) - OVERRIDABLE_FIELDS
            if unknown:
                raise ConfigurationError(
                    f"Unknown override field(s) for {resolved.tier.value}: {sorted(unknown)}",
                    {'fields': sorted(unknown)},
                )
            try:
                resolved = replace(resolved, **overrides)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"Invalid override for {resolved.tier.value}/{provider}: {exc}"
                ) from exc

        pinned = client_config.pinned_versions.get(provider)
        if pinned:
            resolved = replace(resolved, model=pinned, version=pinned)

        chain = list(resolved.fallback_chain)
        for other in client_config.allowed_providers:
            if other == provider:
                continue
            other_config = self.models.get((resolved.tier, other))
            if other_config is None:
                _log.debug("No %s model for allowed provider %s; not added to fallback chain",
                           resolved.tier.value, other)
                continue
            entry = FallbackEntry(resolved.tier, other, other_config.model)
            if entry not in chain:
                chain.append(entry)
        resolved.fallback_chain = [e for e in chain if e != resolved.entry]
        return resolved

    # ── Costs ─────────────────────────────────────────────────────────────

    def estimate_cost(self, tier: Union[Tier, str], provider: str,
                      input_tokens: int, output_tokens: int) -> float:
        """Estimate the dollar cost of one request on the base catalog entry."""
        return self.get(tier, provider).calculate_cost(input_tokens, output_tokens)

    def estimate_monthly_budget(self, tier: Union[Tier, str], provider: str,
                                requests_per_day: float, avg_input_tokens: int,
                                avg_output_tokens: int) -> float:
        """Estimate a 30-day spend for a steady request volume."""
        per_request = self.estimate_cost(tier, provider, avg_input_tokens, avg_output_tokens)
        return per_request * requests_per_day * 30

    def recommend_tier(self, task_type: Union[AnyTaskType, str], complexity_label: str,
                       quality_label: str, budget_constraint: Optional[float] = None,
                       provider: Optional[str] = None) -> Tier:
        """Recommend a tier from qualitative inputs and an optional budget.

        Args:
            task_type: Task category.
            complexity_label: ``"low"``, ``"medium"`` or ``"high"``.
            quality_label: ``"draft"``, ``"standard"`` or ``"premium"``.
            budget_constraint: Maximum acceptable cost of a representative
                2000-in/1000-out request. The tier is lowered one step at a
                time until it fits, stopping at economy.
            provider: Provider used for the budget estimate (defaults to the
                process default provider).

        Returns:
            The recommended Tier.

        Raises:
            ValueError: For unknown complexity or quality labels.
        """
        try:
            by_complexity = COMPLEXITY_LABELS[complexity_label.lower()]
            by_quality = QUALITY_LABELS[quality_label.lower()]
        except KeyError as exc:
            raise ValueError(
                f"Unknown label {exc.args[0]!r}; complexity must be one of "
                f"{sorted(COMPLEXITY_LABELS)} and quality one of {sorted(QUALITY_LABELS)}"
            ) from None

        tier = max(by_complexity, by_quality)
        task = parse_task_type(task_type)
        if task in DEMANDING_TASKS and tier == Tier.ECONOMY:
            tier = Tier.STANDARD
        elif task in LIGHT_TASKS and by_quality != Tier.PREMIUM:
            tier = min(tier, Tier.STANDARD)

        if budget_constraint is not None:
            provider = provider or self.default_provider
            while tier != TIER_ORDER[0]:
                cost = self.estimate_cost(
                    tier, provider, REPRESENTATIVE_INPUT_TOKENS, REPRESENTATIVE_OUTPUT_TOKENS
                )
                if cost <= budget_constraint:
                    break
                _log.debug("recommend_tier: %s costs %.4f > budget %.4f, downgrading",
                           tier.value, cost, budget_constraint)
                tier = tier.downgrade()
        return tier

    def compare_tier(self, tier: Union[Tier, str]) -> List[Dict[str, Any]]:
        """Get a cost comparison table for all providers serving a tier.

        Returns:
            List of dictionaries, cheapest first
        """
        tier = Tier.parse(tier)
        rows = []
        for provider in self.providers_for_tier(tier):
            model = self.models[(tier, provider)]
            rows.append({
                'provider': provider,
                'model': model.model,
                'cost_per_1k_input': model.cost_per_1k_input,
                'cost_per_1k_output': model.cost_per_1k_output,
                'representative_cost': model.calculate_cost(
                    REPRESENTATIVE_INPUT_TOKENS, REPRESENTATIVE_OUTPUT_TOKENS),
                'max_tokens': model.max_tokens,
                'context_window': model.context_window,
            })
        rows.sort(key=lambda r: r['representative_cost'])
        return rows

    # ── Persistence ───────────────────────────────────────────────────────

    def save_to_file(self, file_path: str) -> None:
        """Save the catalog to a JSON file."""
        catalog: Dict[str, Dict[str, Any]] = {}
        for (tier, provider), model in self.models.items():
            catalog.setdefault(tier.value, {})[provider] = model.to_dict()
        from .utils import atomic_write_json
        atomic_write_json(file_path, {
            'default_provider': self.default_provider,
            'catalog': catalog,
        })

    def load_from_file(self, file_path: str) -> None:
        """Replace the catalog with one loaded from a JSON file.

        Raises:
            ConfigurationError: If an entry is malformed.
        """
        with open(file_path, 'r') as f:
            data = json.load(f)
        self.models = self._load_models(data.get('catalog', {}))
        self.default_provider = data.get('default_provider', self.default_provider)
