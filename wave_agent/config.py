"""
Configuration: model presets plus engine limits, with project-level config.

Loading priority:
  1. Project dir .agent.conf.yml
  2. Git root .agent.conf.yml
  3. Global ~/.wave-agent/config.yml

Environment overrides (AGENT_MODEL, AGENT_VERBOSE, TOKEN_LIMIT) are applied last.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any

import yaml
from dotenv import load_dotenv

from .logger import get_logger

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".wave-agent"
CONFIG_FILE = CONFIG_DIR / "config.yml"
HISTORY_FILE = CONFIG_DIR / "history.txt"
PROJECT_CONFIG_NAME = ".agent.conf.yml"

DEFAULT_TOKEN_LIMIT = 64000
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_COMMAND_TIMEOUT = 120


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    """Validate integer within range."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


@dataclass
class ModelPreset:
    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 8192
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_map = {
            "openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY", "gemini": "GEMINI_API_KEY",
        }
        env_var = env_map.get(self.provider)
        return os.environ.get(env_var) if env_var else None

    def get_llm_kwargs(self) -> dict:
        """Return kwargs for the LLMAdapter constructor."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
        }

    def to_yaml(self) -> dict:
        data = {"provider": self.provider, "model": self.model,
                "temperature": self.temperature, "max-tokens": self.max_tokens}
        if self.api_base:
            data["api-base"] = self.api_base
        if self.api_key:
            data["api-key"] = self.api_key
        if self.api_key_env:
            data["api-key-env"] = self.api_key_env
        if self.description:
            data["description"] = self.description
        return data


@dataclass
class Config:
    active_model: str = "local"
    apply_model: Optional[str] = None
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    token_limit: int = DEFAULT_TOKEN_LIMIT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    verbose: bool = False
    mcp_config: str = ".mcp.json"
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        config_loaded = False
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                config_loaded = True
                break

        if not config_loaded:
            config._add_default_presets()
            config._config_source = str(CONFIG_FILE)

        config._apply_env()
        config.project_root = str(project_path)
        return config

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "local": ModelPreset(
                name="local", provider="local", model="openai/model",
                api_base="http://localhost:8080/v1", api_key="not-needed",
                description="Local model (vLLM / llama.cpp on :8080)",
                max_tokens=4096,
            ),
            "gpt-4o": ModelPreset(
                name="gpt-4o", provider="openai", model="openai/gpt-4o",
                api_key_env="OPENAI_API_KEY",
                description="OpenAI GPT-4o",
            ),
            "gpt-4o-mini": ModelPreset(
                name="gpt-4o-mini", provider="openai", model="openai/gpt-4o-mini",
                api_key_env="OPENAI_API_KEY",
                description="OpenAI GPT-4o mini (fast, used for apply-edit)",
            ),
            "claude-sonnet": ModelPreset(
                name="claude-sonnet", provider="anthropic",
                model="anthropic/claude-sonnet-4-20250514",
                api_key_env="ANTHROPIC_API_KEY",
                description="Anthropic Claude Sonnet 4",
            ),
            "deepseek-chat": ModelPreset(
                name="deepseek-chat", provider="deepseek",
                model="deepseek/deepseek-chat",
                api_key_env="DEEPSEEK_API_KEY",
                description="DeepSeek V3 (non-thinking)",
                max_tokens=4096,
            ),
        }

    def _add_default_presets(self):
        self.models = self.get_default_presets()
        self.active_model = "local"

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Cannot read config %s: %s", filepath, e)
            self._add_default_presets()
            return

        self.active_model = data.get("active-model", "local")
        self.apply_model = data.get("apply-model")
        self.token_limit = self._coerce_positive_int(
            data.get("token-limit", DEFAULT_TOKEN_LIMIT), default=DEFAULT_TOKEN_LIMIT,
            min_value=1000, max_value=10_000_000,
        )
        self.max_iterations = self._coerce_positive_int(
            data.get("max-iterations", DEFAULT_MAX_ITERATIONS),
            default=DEFAULT_MAX_ITERATIONS, min_value=1, max_value=500,
        )
        self.command_timeout = self._coerce_positive_int(
            data.get("command-timeout", DEFAULT_COMMAND_TIMEOUT),
            default=DEFAULT_COMMAND_TIMEOUT, min_value=1, max_value=600,
        )
        self.verbose = self._coerce_bool(data.get("verbose", False), default=False)
        self.mcp_config = str(data.get("mcp-config", ".mcp.json"))

        self.models = {}
        for name, m in (data.get("models") or {}).items():
            self.models[name] = ModelPreset(
                name=name, provider=m.get("provider", "openai"),
                model=m.get("model", "openai/gpt-4o-mini"),
                api_base=m.get("api-base"), api_key=m.get("api-key"),
                api_key_env=m.get("api-key-env"),
                temperature=m.get("temperature", 0.0),
                max_tokens=m.get("max-tokens", 8192),
                description=m.get("description", ""),
            )
        if not self.models:
            self._add_default_presets()

    def _apply_env(self):
        env_map = {
            "AGENT_MODEL": ("active_model", str),
            "AGENT_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
            "TOKEN_LIMIT": (
                "token_limit",
                lambda v: self._coerce_positive_int(v, default=self.token_limit,
                                                    min_value=1000, max_value=10_000_000),
            ),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                try:
                    setattr(self, attr, conv(val))
                except (ValueError, TypeError):
                    pass

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        data: Dict[str, Any] = {
            "active-model": self.active_model,
            "token-limit": self.token_limit,
            "max-iterations": self.max_iterations,
            "command-timeout": self.command_timeout,
            "verbose": self.verbose,
            "mcp-config": self.mcp_config,
            "models": {name: preset.to_yaml() for name, preset in self.models.items()},
        }
        if self.apply_model:
            data["apply-model"] = self.apply_model
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model not in self.models:
            raise ValueError(
                f"Model '{self.active_model}' not found. Available: {', '.join(self.models)}"
            )
        return self.models[self.active_model]

    def get_apply_preset(self) -> ModelPreset:
        """Preset used to merge partial edits; falls back to the active model."""
        if self.apply_model and self.apply_model in self.models:
            return self.models[self.apply_model]
        return self.get_active_preset()

    def set_active_model(self, name: str) -> bool:
        if name in self.models:
            self.active_model = name
            return True
        return False

    def list_models(self) -> List[Dict]:
        return [
            {"name": n, "model": p.model, "description": p.description,
             "active": n == self.active_model}
            for n, p in self.models.items()
        ]

    def resolve_mcp_config_path(self) -> Path:
        path = Path(self.mcp_config).expanduser()
        if not path.is_absolute():
            path = Path(self.project_root or ".") / path
        return path

    @staticmethod
    def _coerce_bool(value, default: bool) -> bool:
        valid, coerced, _ = _validate_bool(value)
        return coerced if valid else default

    @staticmethod
    def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 100000) -> int:
        valid, coerced, _ = _validate_int_range(value, min_value, max_value)
        if valid:
            return coerced
        if coerced:
            return coerced
        return default

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        current = path
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return None
