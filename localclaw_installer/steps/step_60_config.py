from __future__ import annotations

import logging
import secrets
import string
from pathlib import Path
from typing import Any, Dict, Mapping

from ..pipeline import Outcome, StepContext, StepResult
from ..state_store import atomic_write_text, get_path, load_document, upsert, upsert_env_file
from .common import ConfigUpsertStep

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits
LMSTUDIO_BASE_URL = "http://127.0.0.1:1234/v1"


def generate_gateway_token(length: int = 64) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class GatewayConfigStep(ConfigUpsertStep):
    """gateway.mode=local on loopback with token auth.

    An existing token is kept so re-running never invalidates paired clients.
    """

    step_id = "config"
    done_message = "Config written: gateway.mode=local"
    skip_message = "Gateway config already up to date"

    def target(self, ctx: StepContext) -> Path:
        return ctx.cfg.paths.config_file

    def updates(self, ctx: StepContext, doc: Mapping[str, Any]) -> Dict[Any, Any]:
        token = get_path(doc, "gateway.auth.token") or ctx.cfg.gateway_token or generate_gateway_token()
        return {
            "gateway.mode": "local",
            "gateway.port": ctx.cfg.gateway_port,
            "gateway.bind": "loopback",
            "gateway.auth.mode": "token",
            "gateway.auth.token": token,
        }


class ModelConfigStep(ConfigUpsertStep):
    step_id = "model_config"
    skip_message = "Model already configured"

    def target(self, ctx: StepContext) -> Path:
        return ctx.cfg.paths.config_file

    def updates(self, ctx: StepContext, doc: Mapping[str, Any]) -> Dict[Any, Any]:
        model_id = ctx.cfg.primary_model_id
        if not model_id:
            return {}
        wanted: Dict[Any, Any] = {
            "agents.defaults.model.primary": model_id,
            "agents.defaults.sandbox.mode": "off",
        }
        if ctx.cfg.is_local:
            wanted["models.mode"] = "merge"
            wanted["models.providers.lmstudio"] = {
                "baseUrl": LMSTUDIO_BASE_URL,
                "apiKey": "lmstudio",
                "api": "openai-completions",
                "models": [
                    {
                        "id": ctx.cfg.provider_model_id,
                        "name": ctx.cfg.model,
                        "reasoning": False,
                        "input": ["text"],
                        "cost": {"input": 0, "output": 0, "cacheRead": 0, "cacheWrite": 0},
                        "contextWindow": 32768,
                        "maxTokens": 4096,
                    }
                ],
            }
            wanted["tools.deny"] = ["group:web", "browser", "web_search", "web_fetch"]
        return wanted

    def run(self, ctx: StepContext) -> StepResult:
        if not ctx.cfg.primary_model_id:
            return StepResult.skipped("No model to configure")
        result = super().run(ctx)
        if result.outcome is Outcome.DONE:
            return StepResult.done(f"Model configured: {ctx.cfg.primary_model_id}")
        return result


class ChangeModelStep(ConfigUpsertStep):
    """Switches the default agent to another model; the gateway token is left alone.

    Besides agents.defaults.model.primary the choice is mirrored into the
    main agent's .model file.
    """

    step_id = "change_model"
    skip_message = "Model already selected"

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id

    def target(self, ctx: StepContext) -> Path:
        return ctx.cfg.paths.config_file

    def updates(self, ctx: StepContext, doc: Mapping[str, Any]) -> Dict[Any, Any]:
        return {"agents.defaults.model.primary": self.model_id} if self.model_id else {}

    def is_satisfied(self, ctx: StepContext) -> bool:
        model_file = ctx.cfg.paths.model_file
        return (
            super().is_satisfied(ctx)
            and model_file.exists()
            and model_file.read_text(encoding="utf-8").strip() == self.model_id
        )

    def run(self, ctx: StepContext) -> StepResult:
        result = super().run(ctx)
        if result.outcome is not Outcome.DONE or ctx.runner.dry_run:
            return result
        try:
            atomic_write_text(ctx.cfg.paths.model_file, self.model_id)
        except OSError as e:
            logger.warning("Could not write %s: %s", ctx.cfg.paths.model_file, e)
        return StepResult.done(f"Model set to {self.model_id}")


class ApiKeyStep:
    """Stores the provider key in openclaw.json, the agent auth store and .env."""

    step_id = "api_key"
    critical = False
    skip_message = "API key already stored"

    def _profile(self, ctx: StepContext) -> Dict[str, str]:
        return {"type": "api_key", "provider": ctx.cfg.provider, "key": ctx.cfg.api_key}

    def _profile_key(self, ctx: StepContext) -> str:
        return f"{ctx.cfg.provider}:default"

    def is_satisfied(self, ctx: StepContext) -> bool:
        if not ctx.cfg.api_key:
            return False
        paths = ctx.cfg.paths
        key = ("auth", "profiles", self._profile_key(ctx))
        store_key = ("profiles", self._profile_key(ctx))
        return (
            get_path(load_document(paths.config_file), key) == self._profile(ctx)
            and get_path(load_document(paths.auth_store), store_key) == self._profile(ctx)
        )

    def run(self, ctx: StepContext) -> StepResult:
        if not ctx.cfg.api_key:
            return StepResult.skipped("No API key provided")

        paths = ctx.cfg.paths
        profile = self._profile(ctx)
        pkey = self._profile_key(ctx)

        if ctx.runner.dry_run:
            logger.info("Would store API key for %s", ctx.cfg.provider)
            return StepResult.done(f"API key saved for {ctx.cfg.provider} (dry run)")

        try:
            upsert(paths.config_file, [(("auth", "profiles", pkey), profile)])
        except OSError as e:
            return StepResult.failed(f"Failed to write openclaw.json API key: {e}")

        try:
            store = load_document(paths.auth_store)
            upsert(
                paths.auth_store,
                [("version", store.get("version") or 1), (("profiles", pkey), profile)],
                mode=0o600,
            )
        except OSError as e:
            return StepResult.failed(f"Failed to write auth-profiles.json: {e}")

        try:
            upsert_env_file(paths.env_file, ctx.cfg.api_key_env, ctx.cfg.api_key)
        except OSError as e:
            logger.warning("Could not update %s: %s", paths.env_file, e)

        return StepResult.done(f"API key saved for {ctx.cfg.provider} (openclaw.json + auth store + .env)")
