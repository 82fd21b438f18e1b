"""
Pydantic models shared by the orchestrator.

Requests arrive from the platform backend already decrypted; everything
here is validated once at the boundary so the lifecycle code can trust
agent IDs and file paths when it builds shell commands and host paths.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class AgentState(str, Enum):
    """Agent status as recorded by the platform backend."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    RESTARTING = "restarting"
    OFFLINE = "offline"
    STOPPED = "stopped"
    DELETED = "deleted"


class Channel(str, Enum):
    """Messaging channels the runtime can be exposed on."""

    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    DISCORD = "discord"


class AIProvider(str, Enum):
    """Model providers offered by the setup wizard."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    CUSTOM = "custom"


def validate_agent_id(value: str) -> str:
    """Reject agent IDs that are unsafe as unit names or path segments.

    Args:
        value: Candidate agent ID.

    Returns:
        The unchanged ID.

    Raises:
        ValueError: If the ID contains anything outside [A-Za-z0-9_-].
    """
    if not _AGENT_ID_RE.match(value):
        raise ValueError(
            f"agent id must match {_AGENT_ID_RE.pattern!r}, got {value!r}"
        )
    return value


class AgentFile(BaseModel):
    """A named file payload destined for the agent's host directories."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str

    @field_validator("path")
    @classmethod
    def _relative_path(cls, v: str) -> str:
        p = PurePosixPath(v)
        if not v or p.is_absolute() or ".." in p.parts:
            raise ValueError(f"file path must be relative to the workspace: {v!r}")
        return v


class ProvisioningRequest(BaseModel):
    """Everything needed to create one agent runtime instance.

    Built once per create call by the backend and never mutated.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    agent_id: str = Field(alias="agentId")
    user_id: str = Field(alias="userId")
    runtime_version: str = Field(default="latest", alias="openclawVersion")
    env_vars: Dict[str, str] = Field(default_factory=dict, alias="envVars")
    files: List[AgentFile] = Field(default_factory=list)
    channels: List[Channel] = Field(default_factory=list)
    enable_whatsapp_sidecar: bool = Field(default=False, alias="enableWhatsappSidecar")

    @field_validator("agent_id")
    @classmethod
    def _agent_id(cls, v: str) -> str:
        return validate_agent_id(v)

    @field_validator("env_vars")
    @classmethod
    def _env_names(cls, v: Dict[str, str]) -> Dict[str, str]:
        for key in v:
            if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", key):
                raise ValueError(f"invalid environment variable name: {key!r}")
        return v


class AgentStats(BaseModel):
    """Runtime stats for one agent's unit."""

    status: str
    uptime: str = "unknown"
    memory: str = "0MB"
    pid: int = 0
    address: str
    gateway_url: str


class WizardAnswers(BaseModel):
    """The subset of setup-wizard answers the runtime config is built from."""

    model_config = ConfigDict(populate_by_name=True)

    agent_name: str = Field(alias="agentName")
    ai_provider: str = Field(alias="aiProvider")
    model_name: str = Field(alias="modelName")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    channels: List[Channel] = Field(default_factory=list)
    enabled_tools: List[str] = Field(default_factory=list, alias="enabledTools")
    tool_api_keys: Dict[str, str] = Field(default_factory=dict, alias="toolApiKeys")
    enabled_skills: List[str] = Field(default_factory=list, alias="enabledSkills")
    full_name: Optional[str] = Field(default=None, alias="fullName")
    occupation: str = ""
