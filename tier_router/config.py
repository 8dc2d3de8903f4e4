"""
Configuration management for Tier Router.

Loads the model catalog, assessor parameters and per-client settings from
JSON configuration files, and holds client configurations that are
replaced out-of-band by administrative calls.
"""

import copy
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .tiers import Tier

_log = logging.getLogger(__name__)


class Config:
    """Configuration manager for the catalog, assessor and client settings."""

    def __init__(self, config_path: str = None):
        """Initialize configuration.

        Args:
            config_path: Path to config directory. If None, uses the packaged
                defaults.

        Raises:
            ValueError: If ``config.json`` exists but is not valid JSON.
        """
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or defaults."""
        if self.config_path and os.path.exists(os.path.join(self.config_path, 'config.json')):
            config_file = os.path.join(self.config_path, 'config.json')
            try:
                with open(config_file, 'r') as f:
                    return json.load(f)
            except json.JSONDecodeError as exc:
                raise ValueError(
                    f"Router config at {config_file} is corrupt (invalid JSON): {exc}. "
                    "Delete or repair the file to fall back to defaults."
                ) from exc
        defaults_path = Path(__file__).parent / 'defaults.json'
        with open(defaults_path, 'r') as f:
            return json.load(f)

    def get_default_provider(self) -> str:
        """Get the process-wide default provider."""
        return self.config.get('default_provider', 'anthropic')

    def get_providers(self) -> List[str]:
        """Get the configured provider set."""
        providers = list(self.config.get('providers', []))
        for by_provider in self.get_catalog().values():
            for provider in by_provider:
                if provider not in providers:
                    providers.append(provider)
        return providers

    def get_catalog(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get raw catalog entries keyed by tier name, then provider."""
        return self.config.get('catalog', {})

    def get_assessor_settings(self) -> Dict[str, Any]:
        """Get assessor weights, thresholds and keyword lists."""
        return self.config.get('assessor', {})

    def get_weights(self) -> Dict[str, float]:
        return self.get_assessor_settings().get('weights', {})

    def get_thresholds(self) -> Dict[str, float]:
        return self.get_assessor_settings().get('thresholds', {})

    def get_baselines(self) -> Dict[str, Dict[str, float]]:
        """Get per task type baseline factors, as ``{task_type: {factor: value}}``."""
        return self.get_assessor_settings().get('baselines', {})

    def get_reasoning_keywords(self) -> List[str]:
        """Get keywords that indicate reasoning depth."""
        return self.get_assessor_settings().get('reasoning_keywords', [])

    def get_creativity_keywords(self) -> List[str]:
        """Get keywords that indicate creative demand."""
        return self.get_assessor_settings().get('creativity_keywords', [])

    def get_clients(self) -> Dict[str, Dict[str, Any]]:
        """Get raw per-client settings keyed by client id."""
        return self.config.get('clients', {})

    def save_config(self, config_path: str) -> None:
        """Save current configuration to file.

        Args:
            config_path: Path to config directory
        """
        os.makedirs(config_path, exist_ok=True)
        config_file = os.path.join(config_path, 'config.json')
        from .utils import atomic_write_json
        atomic_write_json(config_file, self.config)

    def set_catalog_entry(self, tier: str, provider: str, entry: Dict[str, Any]) -> None:
        """Add or replace the raw catalog entry for ``(tier, provider)``."""
        catalog = self.config.setdefault('catalog', {})
        catalog.setdefault(Tier.parse(tier).value, {})[provider] = entry

    def remove_catalog_entry(self, tier: str, provider: str) -> bool:
        """Remove a catalog entry.

        Returns:
            True if the entry existed and was removed, False otherwise
        """
        by_provider = self.get_catalog().get(Tier.parse(tier).value, {})
        return by_provider.pop(provider, None) is not None

    def update_assessor_settings(self, settings: Dict[str, Any]) -> None:
        """Merge new assessor settings over the current ones."""
        current = self.config.get('assessor', {})
        current.update(settings)
        self.config['assessor'] = current

    def set_client(self, client_id: str, client: Dict[str, Any]) -> None:
        """Store raw client settings so they survive :meth:`save_config`."""
        self.config.setdefault('clients', {})[client_id] = client


# ── Client configuration ─────────────────────────────────────────────────────

@dataclass
class ClientConfig:
    """Per-client routing settings.

    Attributes:
        default_tier: Preferred tier, informational for callers.
        default_provider: Provider used when a request names none.
        allowed_providers: Providers the client may be served by. Each one
            beyond the resolved provider adds a same-tier fallback entry.
        tier_overrides: Tier → ModelConfig field overrides
            (e.g. ``{Tier.PREMIUM: {"max_tokens": 2048}}``).
        pinned_versions: Provider → model id to use instead of the catalog's.
        max_daily_cost: Daily spend cap in dollars; None means unlimited.
        max_monthly_cost: Month-to-date spend cap in dollars; None means
            unlimited.
    """

    default_tier: Optional[Tier] = None
    default_provider: Optional[str] = None
    allowed_providers: List[str] = field(default_factory=list)
    tier_overrides: Dict[Tier, Dict[str, Any]] = field(default_factory=dict)
    pinned_versions: Dict[str, str] = field(default_factory=dict)
    max_daily_cost: Optional[float] = None
    max_monthly_cost: Optional[float] = None

    def __post_init__(self) -> None:
        if self.default_tier is not None:
            self.default_tier = Tier.parse(self.default_tier)
        self.tier_overrides = {
            Tier.parse(tier): dict(fields) for tier, fields in self.tier_overrides.items()
        }
        if self.max_daily_cost is not None and self.max_daily_cost < 0:
            raise ValueError(f"max_daily_cost must be >= 0, got {self.max_daily_cost}")
        if self.max_monthly_cost is not None and self.max_monthly_cost < 0:
            raise ValueError(f"max_monthly_cost must be >= 0, got {self.max_monthly_cost}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientConfig":
        return cls(
            default_tier=data.get('default_tier'),
            default_provider=data.get('default_provider'),
            allowed_providers=list(data.get('allowed_providers', [])),
            tier_overrides=data.get('tier_overrides', {}),
            pinned_versions=dict(data.get('pinned_versions', {})),
            max_daily_cost=data.get('max_daily_cost'),
            max_monthly_cost=data.get('max_monthly_cost'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'default_tier': self.default_tier.value if self.default_tier else None,
            'default_provider': self.default_provider,
            'allowed_providers': list(self.allowed_providers),
            'tier_overrides': {t.value: dict(f) for t, f in self.tier_overrides.items()},
            'pinned_versions': dict(self.pinned_versions),
            'max_daily_cost': self.max_daily_cost,
            'max_monthly_cost': self.max_monthly_cost,
        }


class ClientConfigStore:
    """Holds client configurations with whole-object, last-write-wins updates.

    Readers see either the previous or the new configuration, never a
    partially applied one: values are copied on write and swapped under a
    lock. Treat returned configs as read-only.
    """

    def __init__(self, config: Optional[Config] = None):
        self._lock = threading.Lock()
        self._clients: Dict[str, ClientConfig] = {}
        if config is not None:
            for client_id, raw in config.get_clients().items():
                self._clients[client_id] = ClientConfig.from_dict(raw)

    def set(self, client_id: str, client_config: ClientConfig) -> None:
        """Replace the configuration for *client_id*."""
        snapshot = copy.deepcopy(client_config)
        with self._lock:
            self._clients[client_id] = snapshot
        _log.info("Client config replaced for %s", client_id)

    def get(self, client_id: str) -> ClientConfig:
        """Return the configuration for *client_id* (empty if never set)."""
        with self._lock:
            existing = self._clients.get(client_id)
        return existing if existing is not None else ClientConfig()

    def remove(self, client_id: str) -> bool:
        with self._lock:
            return self._clients.pop(client_id, None) is not None

    def client_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._clients)
