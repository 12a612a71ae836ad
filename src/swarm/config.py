"""Swarm configuration using pydantic-settings.

This module defines the SwarmSettings class that reads configuration
from environment variables with the SWARM_ prefix. Every field has a
default so the orchestrator can be constructed without any environment,
which is what the test-suite and embedded callers rely on.

List fields (compliance, github_assignees, github_labels,
notification_channels) are read from the environment as JSON arrays,
e.g. SWARM_GITHUB_ASSIGNEES='["alice", "bob"]'.
"""

import re
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RUNTIME_DIR = str(Path.home() / ".swarm" / "runtime" / "metrics")

_REPOSITORY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class SwarmSettings(BaseSettings):
    """Swarm orchestrator configuration from environment variables.

    All environment variables are prefixed with SWARM_ (e.g., SWARM_MAX_RETRIES).
    """

    model_config = SettingsConfigDict(
        env_prefix="SWARM_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Capacity and scheduling
    # -------------------------------------------------------------------------
    # Total agent capacity; concurrency fractions are applied to this value
    max_agents: int = 7

    # Fraction of max_agents used for concurrent research subtasks
    research_concurrency: float = 0.3

    # Fraction of max_agents used by the development concurrency limiter
    development_concurrency: float = 0.4

    # Run development and QA preparation concurrently
    parallel_execution: bool = True

    # Ask agents that support it to switch to their performance mode
    performance_mode: bool = False

    # -------------------------------------------------------------------------
    # Retry and recovery
    # -------------------------------------------------------------------------
    # Retry failed pipelines and restart agents that report errors
    auto_retry: bool = True

    # Maximum number of whole-pipeline retries per execution
    max_retries: int = 3

    # Backoff base delay; retry n waits min(base * 2**n, max)
    retry_base_delay_ms: int = 1000

    # Backoff cap
    retry_max_delay_ms: int = 30000

    # -------------------------------------------------------------------------
    # Specification and QA
    # -------------------------------------------------------------------------
    # Compliance tags handed to the spec agent (e.g. ["hipaa", "sox"])
    compliance: List[str] = []

    # Problem domain handed to the spec agent (e.g. "financial")
    domain: Optional[str] = None

    # Coverage target handed to the QA agent, in percent
    coverage_target: int = 80

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # Publish integration artifacts to GitHub
    github_enabled: bool = False

    # Target repository in "{owner}/{repo}" format
    github_repository: Optional[str] = None

    # Branch integration artifacts are published to
    github_branch: str = "main"

    # GitHub API token used for escalation issues
    github_token: Optional[str] = None

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Open an issue when a workflow is blocked
    github_auto_create_issues: bool = False

    # Users assigned to escalation issues
    github_assignees: List[str] = []

    # Labels applied to escalation issues
    github_labels: List[str] = ["swarm-blocked", "needs-human-intervention"]

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------
    # Send completion notifications through the integration agent
    notifications_enabled: bool = False

    # Channels handed to the integration agent's notifier
    notification_channels: List[str] = []

    # Webhook called when a workflow is blocked
    blocked_webhook_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Runtime
    # -------------------------------------------------------------------------
    # Directory the metrics snapshot is written to at shutdown
    runtime_dir: str = DEFAULT_RUNTIME_DIR

    # Import path "module:callable" returning a mapping of role -> agent
    agent_factory: Optional[str] = None

    # Import path "module:callable" returning a task decomposer
    decomposer_factory: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Host address to bind the server to
    host: str = "0.0.0.0"

    # Port number for the server
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("max_agents")
    @classmethod
    def validate_max_agents(cls, v: int) -> int:
        """Validate that at least one agent slot is available."""
        if v < 1:
            raise ValueError("max_agents must be at least 1")
        return v

    @field_validator("research_concurrency", "development_concurrency")
    @classmethod
    def validate_concurrency_fraction(cls, v: float) -> float:
        """Validate that a concurrency fraction is in (0, 1]."""
        if not 0 < v <= 1:
            raise ValueError("concurrency fractions must be in (0, 1]")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate that max retries is not negative."""
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v

    @field_validator("retry_base_delay_ms", "retry_max_delay_ms")
    @classmethod
    def validate_retry_delay(cls, v: int) -> int:
        """Validate that retry delays are not negative."""
        if v < 0:
            raise ValueError("retry delays cannot be negative")
        return v

    @field_validator("coverage_target")
    @classmethod
    def validate_coverage_target(cls, v: int) -> int:
        """Validate that coverage target is a percentage."""
        if not 0 <= v <= 100:
            raise ValueError("coverage_target must be between 0 and 100")
        return v

    @field_validator("github_repository")
    @classmethod
    def validate_github_repository(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the repository uses the owner/repo format."""
        if v is None:
            return v
        if not _REPOSITORY_PATTERN.match(v):
            raise ValueError("github_repository must be in owner/repo format")
        return v

    @field_validator("github_base_url", "blocked_webhook_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that URLs use http:// or https://."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("runtime_dir")
    @classmethod
    def validate_runtime_dir(cls, v: str) -> str:
        """Validate that the runtime directory is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("runtime_dir must be an absolute path")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def github_owner(self) -> Optional[str]:
        """Owner part of github_repository, if configured."""
        if not self.github_repository:
            return None
        return self.github_repository.split("/", 1)[0]

    @property
    def github_repo(self) -> Optional[str]:
        """Repository part of github_repository, if configured."""
        if not self.github_repository:
            return None
        return self.github_repository.split("/", 1)[1]


def get_settings() -> SwarmSettings:
    """Create and return SwarmSettings instance.

    Returns:
        SwarmSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If a field is invalid.
    """
    return SwarmSettings()
