"""Configuration for the Lumina AI core.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./lumina.yaml``
  3. ``~/.config/lumina/config.yaml``
  4. Built-in defaults

API keys left empty in the file fall back to the provider's environment
variable (``OPENAI_API_KEY`` and friends).  Persisting settings is the
host application's job; this module only reads them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from lumina_ai.errors import ConfigurationError

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    """Credential and endpoint for one chat provider.

    ``base_url`` overrides the provider's fixed endpoint (for Ollama it is
    the configurable local endpoint).
    """

    api_key: str = ""
    base_url: str = ""
    model: str = ""

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


@dataclass
class ImageSpec:
    """Image generation settings."""

    api_key: str = ""
    timeout: float = 90.0
    max_retries: int = 3
    backoff_base: float = 2.0


@dataclass
class AIConfig:
    """Top-level config for the AI core."""

    # Active chat provider id
    provider: str = "deepseek"

    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    # Chat exchange
    chat_timeout: float = 60.0
    context_char_budget: int = 2000
    temperature: float = 0.7

    image: ImageSpec = field(default_factory=ImageSpec)

    def provider_config(self, provider_id: str | None = None) -> ProviderConfig:
        """Return the config for *provider_id* (default: active provider)."""
        return self.providers.get(provider_id or self.provider, ProviderConfig())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./lumina.yaml"),
    Path.home() / ".config" / "lumina" / "config.yaml",
]

_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}


def _parse_provider(raw: dict[str, Any] | None) -> ProviderConfig:
    raw = raw or {}
    return ProviderConfig(
        api_key=str(raw.get("api_key") or ""),
        base_url=str(raw.get("base_url") or ""),
        model=str(raw.get("model") or ""),
    )


def _parse_image(raw: dict[str, Any] | None) -> ImageSpec:
    if not raw:
        return ImageSpec()
    base = ImageSpec()
    return ImageSpec(
        api_key=str(raw.get("api_key") or ""),
        timeout=float(raw.get("timeout", base.timeout)),
        max_retries=int(raw.get("max_retries", base.max_retries)),
        backoff_base=float(raw.get("backoff_base", base.backoff_base)),
    )


def apply_env_overrides(config: AIConfig, environ: dict[str, str] | None = None) -> AIConfig:
    """Fill empty credentials from environment variables."""
    env = os.environ if environ is None else environ
    for provider_id, var in _ENV_KEYS.items():
        value = env.get(var, "")
        if not value:
            continue
        pc = config.providers.setdefault(provider_id, ProviderConfig())
        if not pc.api_key:
            pc.api_key = value
    ollama_url = env.get("OLLAMA_URL", "")
    if ollama_url:
        pc = config.providers.setdefault("ollama", ProviderConfig())
        if not pc.base_url:
            pc.base_url = ollama_url
    if not config.image.api_key and env.get("HF_API_KEY"):
        config.image.api_key = env["HF_API_KEY"]
    return config


def load_config(path: str | Path | None = None) -> AIConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Raises
    ------
    ConfigurationError
        If the file exists but is not valid YAML or not a mapping.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return apply_env_overrides(AIConfig())
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return apply_env_overrides(AIConfig())

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")

    providers = {
        name: _parse_provider(praw)
        for name, praw in (raw.get("providers") or {}).items()
    }

    base = AIConfig()
    config = AIConfig(
        provider=raw.get("provider", base.provider),
        providers=providers,
        chat_timeout=float(raw.get("chat_timeout", base.chat_timeout)),
        context_char_budget=int(raw.get("context_char_budget", base.context_char_budget)),
        temperature=float(raw.get("temperature", base.temperature)),
        image=_parse_image(raw.get("image")),
    )
    return apply_env_overrides(config)
