"""Configuration management for mosaic sessions."""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional
from dotenv import load_dotenv

PROVIDER_TYPES = ("openai", "anthropic", "openrouter", "ollama", "xai", "mistral", "custom")

# Conventional credential variables, consulted when MOSAIC_API_KEY is unset
PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "xai": "XAI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "custom": "CUSTOM_API_KEY",
}

DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "openrouter": "openai/gpt-4o",
    "ollama": "llama3.1",
    "xai": "grok-3",
    "mistral": "mistral-large-latest",
    "custom": "",
}


def get_global_config_path() -> Path:
    """Get path to global config: ~/.mosaic.json"""
    return Path.home() / ".mosaic.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.mosaic/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".mosaic" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, IOError):
            pass
    return {}


@dataclass
class ProviderConfig:
    """Which backend to talk to and how."""

    type: str = "openai"
    model: str = ""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 16384
    temperature: Optional[float] = None
    thinking: bool = False

    def __post_init__(self):
        if not self.model:
            self.model = DEFAULT_MODELS.get(self.type, "")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        temperature = data.get("temperature")
        return cls(
            type=data.get("type", "openai"),
            model=data.get("model", ""),
            api_key=data.get("api_key") or None,
            base_url=data.get("base_url") or None,
            max_tokens=int(data.get("max_tokens", 16384)),
            temperature=float(temperature) if temperature is not None else None,
            thinking=bool(data.get("thinking", False)),
        )


@dataclass
class RetrySettings:
    """Bounds for RetryPolicy. Times are in seconds."""

    max_attempts: int = 3
    timeout: float = 180.0
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrySettings":
        defaults = cls()
        return cls(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            timeout=float(data.get("timeout", defaults.timeout)),
            initial_delay=float(data.get("initial_delay", defaults.initial_delay)),
            backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
            max_delay=float(data.get("max_delay", defaults.max_delay)),
        )


@dataclass
class SessionConfig:
    """Configuration for one interactive session."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    workspace_path: Path = field(default_factory=lambda: Path.cwd())
    max_iterations: int = 30
    enable_tool_chaining: bool = True
    tool_timeout: float = 30.0
    max_context_tokens: int = 32000
    use_planning: bool = False
    persona_path: Optional[Path] = None
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], workspace: Optional[Path] = None) -> "SessionConfig":
        persona = data.get("persona_path")
        return cls(
            provider=ProviderConfig.from_dict(data.get("provider", {})),
            workspace_path=workspace or Path(data.get("workspace_path", str(Path.cwd()))),
            max_iterations=int(data.get("max_iterations", 30)),
            enable_tool_chaining=bool(data.get("enable_tool_chaining", True)),
            tool_timeout=float(data.get("tool_timeout", 30.0)),
            max_context_tokens=int(data.get("max_context_tokens", 32000)),
            use_planning=bool(data.get("use_planning", False)),
            persona_path=Path(persona) if persona else None,
            retry=RetrySettings.from_dict(data.get("retry", {})),
        )

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "SessionConfig":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.mosaic.json (global)
        2. workspace/.mosaic/config.json (workspace-specific)

        The ``provider`` and ``retry`` sections merge key by key.
        """
        config_data: Dict[str, Any] = {}
        for path in (get_global_config_path(), get_workspace_config_path(workspace)):
            layer = load_json_config(path)
            for key, value in layer.items():
                if key in ("provider", "retry") and isinstance(value, dict):
                    merged = dict(config_data.get(key, {}))
                    merged.update(value)
                    config_data[key] = merged
                else:
                    config_data[key] = value
        return cls.from_dict(config_data, workspace)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, workspace: Optional[Path] = None) -> "SessionConfig":
        """Load configuration from environment variables on top of the JSON files."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        config = cls.from_json(workspace)
        provider_type = os.getenv("MOSAIC_PROVIDER")
        if provider_type and provider_type != config.provider.type:
            config.provider = ProviderConfig(type=provider_type)

        provider = config.provider
        provider.model = os.getenv("MOSAIC_MODEL", provider.model)
        provider.base_url = os.getenv("MOSAIC_BASE_URL", provider.base_url or "") or None
        provider.api_key = (
            os.getenv("MOSAIC_API_KEY")
            or provider.api_key
            or os.getenv(PROVIDER_KEY_ENV.get(provider.type, ""), "")
            or None
        )
        if os.getenv("MOSAIC_MAX_ITERATIONS"):
            config.max_iterations = int(os.environ["MOSAIC_MAX_ITERATIONS"])
        if os.getenv("MOSAIC_TOOL_TIMEOUT"):
            config.tool_timeout = float(os.environ["MOSAIC_TOOL_TIMEOUT"])
        if os.getenv("MOSAIC_WORKSPACE") and workspace is None:
            config.workspace_path = Path(os.environ["MOSAIC_WORKSPACE"])
        return config

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["workspace_path"] = str(self.workspace_path)
        data["persona_path"] = str(self.persona_path) if self.persona_path else None
        data["provider"].pop("api_key", None)
        return data

    def validate(self) -> bool:
        """Validate the configuration."""
        provider = self.provider
        if provider.type not in PROVIDER_TYPES:
            raise ValueError(
                f"Unknown provider '{provider.type}'. Expected one of: {', '.join(PROVIDER_TYPES)}"
            )
        if not provider.model:
            raise ValueError("A model name is required. Set MOSAIC_MODEL or provider.model.")
        if provider.type != "ollama" and not provider.api_key:
            raise ValueError(
                f"API key is required for {provider.type}. "
                f"Set MOSAIC_API_KEY or {PROVIDER_KEY_ENV.get(provider.type, 'MOSAIC_API_KEY')}."
            )
        if provider.type == "custom" and not provider.base_url:
            raise ValueError("The custom provider needs a base URL. Set MOSAIC_BASE_URL.")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        return True
