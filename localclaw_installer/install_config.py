from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

import yaml

from .errors import ConfigError
from .lib.env import Paths
from .state_store import apply_updates

logger = logging.getLogger(__name__)

LOCAL = "local"
CLOUD = "cloud"

DEFAULT_GATEWAY_PORT = 18789
DEFAULT_POLL_INTERVAL_S = 2.0
DEFAULT_BRIDGE_TIMEOUT_S = 3600.0


class ModelEntry(NamedTuple):
    query: str
    provider_model_id: str


class ProviderInfo(NamedTuple):
    model: str
    env_key: str


# Display name -> (LM Studio download query, id used in the lmstudio provider block).
MODEL_CATALOG: Dict[str, ModelEntry] = {
    "Qwen 3 8B Q4_K_M": ModelEntry("qwen-3-8b@q4_k_m", "qwen3-8b"),
    "Qwen 3 14B Q4_K_M": ModelEntry("qwen-3-14b@q4_k_m", "qwen3-14b"),
    "Qwen 3 32B Q4_K_M": ModelEntry("qwen-3-32b@q4_k_m", "qwen3-32b"),
    "DeepSeek R1 14B Q4_K_M": ModelEntry("deepseek-r1-distill-qwen-14b@q4_k_m", "deepseek-r1-distill-qwen-14b"),
    "Llama 3.3 8B Q4_K_M": ModelEntry("llama-3.3-8b-instruct@q4_k_m", "llama-3.3-8b-instruct"),
}

PROVIDERS: Dict[str, ProviderInfo] = {
    "openrouter": ProviderInfo("openrouter/auto", "OPENROUTER_API_KEY"),
    "openai": ProviderInfo("openai/gpt-4o-mini", "OPENAI_API_KEY"),
    "anthropic": ProviderInfo("anthropic/claude-3-5-haiku-20241022", "ANTHROPIC_API_KEY"),
    "google": ProviderInfo("google/gemini-2.5-flash-preview", "GEMINI_API_KEY"),
    "xai": ProviderInfo("x-ai/grok-2-1212", "XAI_API_KEY"),
}


def _default_terminal_command() -> List[str]:
    if platform.system() == "Darwin":
        return ["open", "-a", "Terminal"]
    return ["x-terminal-emulator", "-e"]


@dataclass(frozen=True)
class InstallConfig:
    raw: Dict[str, Any]

    @property
    def inference_mode(self) -> str:
        return str(self.raw.get("inference_mode") or LOCAL).lower()

    @property
    def is_local(self) -> bool:
        return self.inference_mode == LOCAL

    @property
    def model(self) -> str:
        return str(self.raw.get("model") or "")

    @property
    def model_query(self) -> str:
        if not self.model:
            return ""
        entry = MODEL_CATALOG.get(self.model)
        return entry.query if entry else self.model

    @property
    def provider_model_id(self) -> str:
        entry = MODEL_CATALOG.get(self.model)
        if entry:
            return entry.provider_model_id
        return self.model_query.split("@", 1)[0]

    @property
    def provider(self) -> str:
        return str(self.raw.get("provider") or "openrouter").lower()

    @property
    def primary_model_id(self) -> str:
        """Value written to agents.defaults.model.primary."""
        if self.is_local:
            return f"lmstudio/{self.provider_model_id}" if self.provider_model_id else ""
        explicit = self.raw.get("provider_model")
        if explicit:
            return str(explicit)
        info = PROVIDERS.get(self.provider)
        return info.model if info else ""

    @property
    def api_key_env(self) -> str:
        explicit = self.raw.get("api_key_env")
        if explicit:
            return str(explicit)
        info = PROVIDERS.get(self.provider)
        return info.env_key if info else ""

    @property
    def api_key(self) -> str:
        # Secrets are only ever read from the environment, never from the YAML file.
        if self.is_local or not self.api_key_env:
            return ""
        return os.environ.get(self.api_key_env, "").strip()

    @property
    def gateway_port(self) -> int:
        return int(((self.raw.get("gateway") or {}).get("port")) or DEFAULT_GATEWAY_PORT)

    @property
    def gateway_token(self) -> str:
        return str(((self.raw.get("gateway") or {}).get("token")) or "")

    @property
    def install_lmstudio(self) -> bool:
        return bool((self.raw.get("install") or {}).get("lmstudio", self.is_local))

    @property
    def install_openclaw(self) -> bool:
        return bool((self.raw.get("install") or {}).get("openclaw", True))

    @property
    def dry_run(self) -> bool:
        return bool(self.raw.get("dry_run", False))

    @property
    def paths(self) -> Paths:
        overrides = self.raw.get("paths") or {}
        known = {f.name for f in fields(Paths)}
        return Paths(**{k: str(v) for k, v in overrides.items() if k in known})

    @property
    def poll_interval_s(self) -> float:
        return float(((self.raw.get("bridge") or {}).get("poll_interval_s")) or DEFAULT_POLL_INTERVAL_S)

    @property
    def bridge_timeout_s(self) -> Optional[float]:
        """None means wait forever (bridge.timeout_s: 0)."""
        bridge = self.raw.get("bridge") or {}
        value = bridge.get("timeout_s", DEFAULT_BRIDGE_TIMEOUT_S)
        if value is None or float(value) <= 0:
            return None
        return float(value)

    @property
    def terminal_command(self) -> List[str]:
        cmd = (self.raw.get("detached") or {}).get("terminal_command")
        return [str(a) for a in cmd] if cmd else _default_terminal_command()

    def with_updates(self, updates: Mapping[str, Any]) -> "InstallConfig":
        return InstallConfig(raw=apply_updates(self.raw, updates))


def validate_install_config(cfg: InstallConfig) -> InstallConfig:
    if cfg.inference_mode not in {LOCAL, CLOUD}:
        raise ConfigError(f"inference_mode must be 'local' or 'cloud', got {cfg.inference_mode!r}")
    if not cfg.is_local and cfg.provider not in PROVIDERS and not cfg.raw.get("provider_model"):
        raise ConfigError(f"Unknown provider {cfg.provider!r}; set provider_model explicitly")
    term = (cfg.raw.get("detached") or {}).get("terminal_command")
    if term is not None and not isinstance(term, list):
        raise ConfigError("detached.terminal_command must be a list of strings")
    return cfg


def load_install_config(path: str) -> InstallConfig:
    p = Path(os.path.expanduser(path))
    if not p.exists():
        logger.info("No install config at %s; using defaults", p)
        return InstallConfig(raw={})

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError("install config must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{p.name} must contain a mapping/object")

    return validate_install_config(InstallConfig(raw=raw))
