"""Configuration management for Loop Pilot.

Two layers:
- Settings: process-level settings loaded from environment variables / .env
- LoopConfig: repositories, credentials and limits loaded from a YAML file
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Loop Pilot"
    debug: bool = False

    # Database
    database_url: str = Field(
        default="sqlite:///loop-pilot.db",
        description="SQLAlchemy connection URL for the loop store",
    )

    # Paths
    config_path: Path = Field(
        default=Path("config.yaml"),
        description="Path to the YAML loop configuration",
    )
    workspaces_path: Path = Field(
        default=Path("workspaces"),
        description="Path to store repository workspaces",
    )

    # GitHub
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )

    # Agent process
    agent_binary: str = Field(
        default="droid",
        description="Coding agent executable",
    )
    agent_autonomy: str = Field(
        default="high",
        description="Autonomy level passed to --auto",
    )
    agent_key_env: str = Field(
        default="FACTORY_API_KEY",
        description="Environment variable carrying the agent credential",
    )
    agent_timeout_seconds: Optional[int] = Field(
        default=None,
        description="Kill an iteration after this many seconds (unset = no limit)",
    )
    output_tail_chars: int = Field(
        default=500,
        description="How much trailing agent output to keep in error messages",
    )

    # Web API
    host: str = "0.0.0.0"
    port: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()


# =============================================================================
# YAML loop configuration
# =============================================================================


class RepoConfig(BaseModel):
    """A repository loops may run against."""

    owner: str
    name: str
    default_branch: str = "main"
    prompt_path: str = "prompt.md"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class GitHubConfig(BaseModel):
    token: Optional[SecretStr] = None


class AgentConfig(BaseModel):
    default_api_key: Optional[SecretStr] = None


class ConcurrencyConfig(BaseModel):
    max_parallel_loops: int = 3
    max_per_repo: int = 1
    default_iterations: int = 10


class NotificationConfig(BaseModel):
    iteration_updates: bool = True
    webhook_url: Optional[str] = None


class LoopConfig(BaseModel):
    """The config.yaml file structure."""

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    repos: list[RepoConfig] = Field(default_factory=list)
    user_keys: dict[str, SecretStr] = Field(default_factory=dict)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    @classmethod
    def load(cls, path: Path) -> "LoopConfig":
        """Load and validate the config file from disk."""
        if not path.exists():
            raise ConfigurationError(
                f"Config file not found: {path}. Copy config.example.yaml to config.yaml"
            )
        try:
            data = yaml.safe_load(path.read_text()) or {}
            return cls.model_validate(data)
        except (yaml.YAMLError, ValidationError) as e:
            raise ConfigurationError(f"Invalid config file {path}: {e}") from e

    def get_repo(self, owner: str, name: str) -> Optional[RepoConfig]:
        """Find a configured repository."""
        for repo in self.repos:
            if repo.owner == owner and repo.name == name:
                return repo
        return None

    def get_agent_key(self, user_id: str) -> Optional[str]:
        """Agent credential for a user, falling back to the default key."""
        key = self.user_keys.get(user_id) or self.agent.default_api_key
        return key.get_secret_value() if key else None

    @property
    def github_token(self) -> Optional[str]:
        token = self.github.token
        return token.get_secret_value() if token else None


@lru_cache
def load_config(path: Optional[Path] = None) -> LoopConfig:
    """Get cached loop configuration."""
    return LoopConfig.load(path or settings.config_path)
