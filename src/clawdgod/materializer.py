"""
Configuration materializer: turn a provisioning request into host files.

The runtime reads one JSON config at its state-dir root plus a handful of
markdown files (SOUL.md, USER.md, TOOLS.md) from its workspace. The backend
sends a ``config.json`` generated from the setup wizard; before it lands on
the host we pin it to the agent's placement:

- ``agents.defaults.workspace`` and every ``agents.list[*].workspace`` point
  at the agent's own workspace directory
- ``gateway.port`` is the agent's port, bound on the LAN in local mode
- ``gateway.auth`` is the only auth mechanism, a token equal to the agent ID;
  the deprecated ``gateway.token`` is removed
- top-level keys the runtime rejects are dropped

Everything else is rendered verbatim into the workspace.

The wizard-side builders (``build_env_block``, ``generate_runtime_config``)
live here too so both ends agree on the config schema.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .models import AIProvider, Channel, ProvisioningRequest, WizardAnswers
from .placement import AgentIdentity

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"

# Top-level keys the runtime refuses to start with.
REJECTED_TOP_LEVEL_KEYS = ("meta",)

PROVIDER_ENV_VARS: Dict[str, str] = {
    AIProvider.ANTHROPIC.value: "ANTHROPIC_API_KEY",
    AIProvider.OPENAI.value: "OPENAI_API_KEY",
    AIProvider.GOOGLE.value: "GOOGLE_API_KEY",
    AIProvider.OPENROUTER.value: "OPENROUTER_API_KEY",
}

# Custom and unlisted providers are driven through the OpenAI-compatible client.
FALLBACK_ENV_VAR = "OPENAI_API_KEY"
FALLBACK_BASE_URL_VAR = "OPENAI_BASE_URL"

# Tools that need a credential, and the env var the runtime reads it from.
TOOL_ENV_VARS: Dict[str, str] = {
    "brave_search": "BRAVE_API_KEY",
    "nanobanana": "NANOBANANA_API_KEY",
    "tavily": "TAVILY_API_KEY",
}


class ConfigValidationError(ValueError):
    """The request's configuration cannot be rendered."""


@dataclass(frozen=True)
class RenderedFile:
    """A file ready to be written to the host.

    Attributes:
        path: Absolute host path.
        content: File content.
        kind: ``config``, ``workspace``, or ``env``.
    """

    path: str
    content: str
    kind: str


def _section(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def render_runtime_config(identity: AgentIdentity, raw: Optional[str]) -> str:
    """Pin a runtime config document to the agent's placement.

    Args:
        identity: The agent's host identity.
        raw: JSON text from the request, or None for a bare config.

    Returns:
        str: The rendered JSON (2-space indent).

    Raises:
        ConfigValidationError: If ``raw`` is not a JSON object.
    """
    if raw is None:
        config: Dict[str, Any] = {}
    else:
        try:
            config = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigValidationError(f"{CONFIG_FILE_NAME} is not valid JSON: {exc}") from exc
        if not isinstance(config, dict):
            raise ConfigValidationError(f"{CONFIG_FILE_NAME} must be a JSON object")

    for key in REJECTED_TOP_LEVEL_KEYS:
        config.pop(key, None)

    agents = _section(config, "agents")
    _section(agents, "defaults")["workspace"] = identity.workspace_dir
    if isinstance(agents.get("list"), list):
        for entry in agents["list"]:
            if isinstance(entry, dict):
                entry["workspace"] = identity.workspace_dir

    gateway = _section(config, "gateway")
    gateway["mode"] = "local"
    gateway["bind"] = "lan"
    gateway["port"] = identity.port
    control_ui = _section(gateway, "controlUi")
    control_ui["allowInsecureAuth"] = True
    control_ui["dangerouslyDisableDeviceAuth"] = True

    gateway.pop("token", None)
    gateway.pop("auth", None)
    gateway["auth"] = {"mode": "token", "token": identity.agent_id}

    return json.dumps(config, indent=2)


def render_env_file(env_vars: Mapping[str, str]) -> str:
    """Render a systemd EnvironmentFile, one ``KEY=VALUE`` per line.

    Raises:
        ConfigValidationError: If a value contains a line break.
    """
    lines = []
    for key, value in env_vars.items():
        value = str(value)
        if "\n" in value or "\r" in value:
            raise ConfigValidationError(f"Environment value for {key} contains a line break")
        lines.append(f"{key}={value}")
    return "\n".join(lines)


def render(identity: AgentIdentity, request: ProvisioningRequest) -> List[RenderedFile]:
    """Render every host file for a provisioning request.

    Nothing touches the host here; a bad config fails before any write.

    Args:
        identity: The agent's host identity.
        request: The provisioning request.

    Returns:
        List of RenderedFile: runtime config first, then workspace files,
        then the env file.

    Raises:
        ConfigValidationError: If the config or env vars are malformed.
    """
    config_raw: Optional[str] = None
    workspace_files: List[RenderedFile] = []

    for f in request.files:
        if f.path == CONFIG_FILE_NAME:
            config_raw = f.content
        else:
            workspace_files.append(
                RenderedFile(f"{identity.workspace_dir}/{f.path}", f.content, "workspace")
            )

    if config_raw is None:
        logger.warning("No %s in request for %s; rendering a bare config", CONFIG_FILE_NAME, identity.agent_id)

    rendered = [RenderedFile(identity.config_path, render_runtime_config(identity, config_raw), "config")]
    rendered.extend(workspace_files)
    rendered.append(RenderedFile(identity.env_path, render_env_file(request.env_vars), "env"))
    return rendered


# ---------------------------------------------------------------------------
# Wizard-side builders
# ---------------------------------------------------------------------------


def build_env_block(answers: WizardAnswers, api_key: str) -> Dict[str, str]:
    """Map the wizard's provider and tool choices to runtime env vars.

    Args:
        answers: Setup wizard answers.
        api_key: Decrypted provider API key.

    Returns:
        Dict of environment variables.
    """
    env: Dict[str, str] = {}

    var = PROVIDER_ENV_VARS.get(answers.ai_provider)
    if var:
        env[var] = api_key
    else:
        env[FALLBACK_ENV_VAR] = api_key
        if answers.base_url:
            env[FALLBACK_BASE_URL_VAR] = answers.base_url

    for tool in answers.enabled_tools:
        tool_var = TOOL_ENV_VARS.get(tool)
        key = answers.tool_api_keys.get(tool)
        if tool_var and key:
            env[tool_var] = key

    return env


def _channels_block(
    channels: List[Channel],
    channel_configs: Mapping[str, Mapping[str, str]],
) -> Dict[str, Any]:
    block: Dict[str, Any] = {}
    for ch in channels:
        cfg = channel_configs.get(ch.value, {})
        if ch == Channel.TELEGRAM:
            # an open DM policy requires "*" in allowFrom
            allow_from = ["*"]
            if cfg.get("telegramUserId"):
                allow_from.append(cfg["telegramUserId"])
            block["telegram"] = {
                "dmPolicy": "open",
                "botToken": cfg.get("botToken", ""),
                "allowFrom": allow_from,
                "groupPolicy": "allowlist",
                "streamMode": "partial",
            }
        elif ch == Channel.DISCORD:
            block["discord"] = {
                "botToken": cfg.get("botToken", ""),
                "applicationId": cfg.get("applicationId", ""),
                "dmPolicy": "open",
            }
        elif ch == Channel.WHATSAPP:
            # configured by the runtime's whatsapp plugin
            block["whatsapp"] = {}
    return block


def generate_runtime_config(
    agent_id: str,
    answers: WizardAnswers,
    channel_configs: Mapping[str, Mapping[str, str]],
    api_key: str,
) -> str:
    """Build the runtime's config.json from setup-wizard answers.

    Workspace, port, and auth are left for ``render_runtime_config`` to pin
    at provisioning time.

    Args:
        agent_id: Agent ID (recorded as the config's owner).
        answers: Setup wizard answers.
        channel_configs: Per-channel settings keyed by channel name.
        api_key: Decrypted provider API key.

    Returns:
        str: JSON text.
    """
    if answers.ai_provider == AIProvider.CUSTOM.value:
        model = answers.model_name
    else:
        model = f"{answers.ai_provider}/{answers.model_name}"

    owner = answers.full_name or "the user"
    theme = f"personal AI assistant for {owner}"
    if answers.occupation:
        theme += f", a {answers.occupation}"

    plugin_entries: Dict[str, Any] = {}
    for name in [c.value for c in answers.channels] + answers.enabled_tools + answers.enabled_skills:
        plugin_entries[name] = {"enabled": True}

    config = {
        "meta": {"agentId": agent_id},
        "agents": {
            "defaults": {
                "model": {"primary": model},
                "skipBootstrap": True,
                "maxConcurrent": 4,
                "subagents": {"maxConcurrent": 8},
            },
            "list": [
                {
                    "id": "main",
                    "default": True,
                    "model": model,
                    "identity": {"name": answers.agent_name, "theme": theme},
                }
            ],
        },
        "env": build_env_block(answers, api_key),
        "tools": {
            "alsoAllow": ["group:plugins"] + [f"tool:{t}" for t in answers.enabled_tools],
        },
        "commands": {"native": "auto", "nativeSkills": "auto"},
        "channels": _channels_block(answers.channels, channel_configs),
        "gateway": {"mode": "local", "bind": "lan"},
        "plugins": {"entries": plugin_entries},
    }
    return json.dumps(config, indent=2)
