"""Configuration loading for coding-bot.

Reads an optional YAML file (``coding-bot.yaml`` by default) and applies
environment variable overrides for deployment. Pydantic models validate
the schema.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

LINEAR_GRAPHQL_URL = "https://api.linear.app/graphql"

DEFAULT_CONFIG_FILE = "coding-bot.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class RepoConfig(BaseModel):
    """Where the main checkout lives and how session branches are named."""

    base_path: str = Field(
        default_factory=lambda: str(Path.cwd().parent),
        description="Directory containing the main checkout",
    )
    name: str = Field(default_factory=lambda: Path.cwd().name)
    base_branch: str = "main"
    branch_prefix: str = "ticket"
    remote: str = "origin"

    @field_validator("name")
    @classmethod
    def _strip_owner(cls, v: str) -> str:
        """Accept 'owner/repo' and keep only the repo part."""
        return v.split("/", 1)[1] if "/" in v else v

    @property
    def main_checkout(self) -> Path:
        return Path(self.base_path) / self.name


class TrackerConfig(BaseModel):
    api_url: str = LINEAR_GRAPHQL_URL
    access_token_env: str = "LINEAR_ACCESS_TOKEN"
    organization_id: str | None = None  # drop events from other organizations when set
    in_progress_state_id: str | None = None
    review_state_id: str | None = None

    @property
    def access_token(self) -> str | None:
        return os.environ.get(self.access_token_env)


class RuntimeConfig(BaseModel):
    model: str = "claude-sonnet-4-20250514"
    permission_mode: Literal["default", "acceptEdits", "plan", "bypassPermissions"] = "acceptEdits"
    max_turns: int = 50
    session_timeout: float = 3600  # seconds
    question_timeout: float = 900  # seconds, while awaiting input
    dedup_window: int = 300  # seconds
    worktree_retries: int = 3  # extra attempts after a retryable git failure
    retry_delay: float = 2.0  # seconds, doubled per attempt
    assignment_tools: list[str] = Field(
        default_factory=lambda: [
            "Read",
            "Write",
            "Edit",
            "MultiEdit",
            "Glob",
            "Grep",
            "Bash",
            "TodoWrite",
            "AskUserQuestion",
        ]
    )
    question_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Grep", "Glob", "Bash", "AskUserQuestion"]
    )
    question_tool_names: list[str] = Field(default_factory=lambda: ["AskUserQuestion"])
    commit_on_success: bool = True

    @model_validator(mode="after")
    def _check_timeouts(self) -> "RuntimeConfig":
        if self.session_timeout <= 0:
            raise ValueError("runtime.session_timeout must be positive")
        if not 0 < self.question_timeout < self.session_timeout:
            raise ValueError(
                "runtime.question_timeout must be positive and shorter than session_timeout"
            )
        return self


class BootstrapConfig(BaseModel):
    enabled: bool = True
    commands: list[str] = Field(default_factory=list)  # empty → detect from lockfiles
    timeout: int = 300  # seconds per command


class BotConfig(BaseModel):
    """Top-level coding-bot configuration."""

    repo: RepoConfig = Field(default_factory=RepoConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    data_dir: str = ".coding-bot-data"


# ── Config Loader ────────────────────────────────────────────────────────────

# env var → (section, field)
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "REPO_BASE_PATH": ("repo", "base_path"),
    "REPO_NAME": ("repo", "name"),
    "BASE_BRANCH": ("repo", "base_branch"),
    "CLAUDE_MODEL": ("runtime", "model"),
    "LINEAR_ORGANIZATION_ID": ("tracker", "organization_id"),
    "CODING_BOT_DATA_DIR": (None, "data_dir"),
}


def load_config(config_path: Path | None = None) -> BotConfig:
    """Load coding-bot configuration.

    Args:
        config_path: YAML config file. Missing file → defaults.

    Returns:
        Validated BotConfig with environment overrides applied.

    Raises:
        ValueError: If config validation fails.
    """
    raw: dict = {}
    path = config_path or Path(DEFAULT_CONFIG_FILE)
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded config file: %s", path)
    elif config_path is not None:
        logger.warning("Config file %s not found — using defaults", config_path)

    for env_name, (section, field) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if not value:
            continue
        if section is None:
            raw[field] = value
        else:
            raw.setdefault(section, {})
            raw[section][field] = value

    config = BotConfig(**raw)
    logger.info(
        "Config: repo=%s base_branch=%s model=%s",
        config.repo.main_checkout,
        config.repo.base_branch,
        config.runtime.model,
    )
    return config
