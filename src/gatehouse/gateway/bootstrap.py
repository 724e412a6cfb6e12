from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from string import Template
from typing import Any

from gatehouse.config import GatewaySettings, ProviderName, ToolProfile
from gatehouse.gateway.base import ConfigWriteError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "openclaw.json"
WORKSPACE_DIRNAME = "workspace"
MANAGED_SENTINEL = ".gatehouse-managed"
FIRST_RUN_MARKER = ".gatehouse-initialized"
MANAGED_KEY_PLACEHOLDER = "managed-by-proxy"
DEFAULT_MANAGED_MODEL = "claude-sonnet-4-5-20250929"
RUNTIME_TOOL_GROUP = "group:runtime"
MOST_RESTRICTIVE_PROFILE: ToolProfile = "minimal"


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    key: str
    default_model: str
    env_var: str


@dataclass(frozen=True, slots=True)
class ManagedRoute:
    route_id: str
    api: str
    env_var: str


BYO_PROVIDERS: dict[ProviderName, ProviderSpec] = {
    "anthropic": ProviderSpec("anthropic", "claude-sonnet-4-5-20250929", "ANTHROPIC_API_KEY"),
    "openai": ProviderSpec("openai", "gpt-5.2", "OPENAI_API_KEY"),
    "google": ProviderSpec("google", "gemini-3-pro-preview", "GEMINI_API_KEY"),
    "openrouter": ProviderSpec(
        "openrouter", "anthropic/claude-sonnet-4.5", "OPENROUTER_API_KEY"
    ),
}

MANAGED_ROUTES: dict[str, ManagedRoute] = {
    "anthropic": ManagedRoute("anthropic", "anthropic-messages", "ANTHROPIC_API_KEY"),
    "openai": ManagedRoute("openai", "openai-completions", "OPENAI_API_KEY"),
    "google": ManagedRoute("google", "google-generative-ai", "GEMINI_API_KEY"),
}

PROFILE_INSTRUCTIONS: dict[ToolProfile, str] = {
    "full": (
        "You have the full tool set, including shell execution when the user has "
        "allowed it. Confirm before running commands that modify files outside the "
        "workspace."
    ),
    "coding": (
        "You are set up for software work: reading and editing files, searching the "
        "workspace and using the browser. Keep changes inside the workspace."
    ),
    "minimal": (
        "You only have conversational tools. Do not claim to read files, browse or "
        "run commands; explain what the user could do instead."
    ),
}

WORKSPACE_DOCUMENTS = {
    "AGENTS.md": "AGENTS.md",
    "TOOLS.md": "TOOLS.{profile}.md",
    "SOUL.md": "SOUL.md",
}


def managed_route_for(model: str) -> ManagedRoute:
    lowered = model.lower()
    if "gpt" in lowered:
        return MANAGED_ROUTES["openai"]
    if "gemini" in lowered:
        return MANAGED_ROUTES["google"]
    return MANAGED_ROUTES["anthropic"]


def tools_block(profile: ToolProfile, allow_exec: bool) -> dict[str, Any]:
    block: dict[str, Any] = {"profile": profile}
    if not allow_exec and profile != MOST_RESTRICTIVE_PROFILE:
        block["deny"] = [RUNTIME_TOOL_GROUP]
    return block


def _qualified(provider_key: str, model: str) -> str:
    if model.startswith(f"{provider_key}/"):
        return model
    return f"{provider_key}/{model}"


@dataclass(frozen=True, slots=True)
class BootstrapPlan:
    config_text: str
    config_path: Path
    env: dict[str, str]
    primary_model: str
    provider_id: str
    tool_profile: ToolProfile
    workspace_dir: Path
    config: dict[str, Any] = field(default_factory=dict)


class BootstrapComposer:
    """Renders the gateway's on-disk config and the env it needs for a given mode."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILENAME

    @property
    def workspace_dir(self) -> Path:
        return self.state_dir / WORKSPACE_DIRNAME

    def compose(self, settings: GatewaySettings) -> BootstrapPlan:
        config: dict[str, Any] = {
            "gateway": {"mode": "local", "port": settings.port},
            "agents": {"defaults": {"workspace": str(self.workspace_dir)}},
            "tools": tools_block(settings.tool_profile, settings.allow_exec),
        }
        env: dict[str, str] = {}

        if settings.mode == "managed":
            model = settings.model or DEFAULT_MANAGED_MODEL
            route = managed_route_for(model)
            provider_id = route.route_id
            primary = _qualified(provider_id, model)
            config["models"] = {
                "mode": "merge",
                "providers": {
                    provider_id: {
                        "baseUrl": f"{settings.proxy_url}/v1/{route.route_id}",
                        "apiKey": settings.license_key,
                        "api": route.api,
                        "models": [{"id": model, "name": model}],
                    }
                },
            }
            # the proxy swaps the license key for the real upstream key
            env[route.env_var] = MANAGED_KEY_PLACEHOLDER
        else:
            spec = BYO_PROVIDERS[settings.provider]
            provider_id = spec.key
            primary = _qualified(provider_id, settings.model or spec.default_model)
            env[spec.env_var] = settings.api_key

        config["agents"]["defaults"]["model"] = {"primary": primary}
        return BootstrapPlan(
            config_text=json.dumps(config, indent=2, ensure_ascii=False) + "\n",
            config_path=self.config_path,
            env=env,
            primary_model=primary,
            provider_id=provider_id,
            tool_profile=settings.tool_profile,
            workspace_dir=self.workspace_dir,
            config=config,
        )

    def write(self, plan: BootstrapPlan) -> None:
        try:
            plan.config_path.parent.mkdir(parents=True, exist_ok=True)
            plan.config_path.write_text(plan.config_text, encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteError(
                f"Failed to write gateway config: {exc}", path=plan.config_path
            ) from exc
        self._seed_workspace(plan.workspace_dir, plan.tool_profile)

    def _seed_workspace(self, workspace: Path, profile: ToolProfile) -> None:
        sentinel = workspace / MANAGED_SENTINEL
        first_run = workspace / FIRST_RUN_MARKER
        try:
            workspace.mkdir(parents=True, exist_ok=True)
            if not first_run.exists():
                sentinel.touch()
                first_run.touch()
            elif not sentinel.exists():
                logger.info("Workspace documents are user-managed; leaving %s as is", workspace)
                return
            for filename, template_name in WORKSPACE_DOCUMENTS.items():
                text = render_document(template_name.format(profile=profile), profile)
                (workspace / filename).write_text(text, encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteError(
                f"Failed to seed workspace documents: {exc}", path=workspace
            ) from exc


def render_document(template_name: str, profile: ToolProfile) -> str:
    source = resources.files("gatehouse.templates").joinpath(template_name)
    template = Template(source.read_text(encoding="utf-8"))
    return template.safe_substitute(
        profile=profile,
        profile_instructions=PROFILE_INSTRUCTIONS[profile],
    )
