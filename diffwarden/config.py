"""Application configuration via pydantic-settings.

Loads all settings from environment variables (or .env file).
See .env.example for documented variable names and defaults.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Central configuration for the DiffWarden application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Bitbucket Cloud ---
    bitbucket_workspace: str = ""
    bitbucket_username: str = ""
    bitbucket_app_password: str = ""
    bitbucket_webhook_secret: str = ""
    bitbucket_allowed_workspaces: str = ""
    # JSON: {"other-ws": {"username": "...", "app_password": "..."}}
    bitbucket_workspace_credentials: str = ""

    # --- GitHub App ---
    github_app_id: str = ""
    github_app_private_key_path: str = "./private-key.pem"
    github_webhook_secret: str = ""

    # --- AI / LLM ---
    openai_api_key: str = ""
    openai_model: str = "gpt-5"
    llm_max_completion_tokens: int = 32000
    llm_summary_max_tokens: int = 16000
    llm_max_diff_chars: int = 200_000
    llm_max_retries: int = 3
    llm_retry_base_delay_seconds: float = 2.0
    llm_request_timeout_seconds: float = 240.0

    # --- Chat notifications ---
    slack_webhook_url: str = ""

    # --- File skip rules (comma-separated) ---
    skip_extensions: str = ""
    skip_paths: str = ""
    skip_file_patterns: str = ""

    # --- Duplicate suppression ---
    dedup_retention_seconds: float = 24 * 60 * 60
    dedup_sweep_interval_seconds: float = 60 * 60

    # --- Review runner ---
    # Keep under the host's ~300s delivery timeout; 0 selects bounded-batch mode.
    review_time_budget_seconds: float = 280.0
    review_batch_size: int = 3
    review_batch_delay_seconds: float = 1.0

    # --- Application ---
    log_level: str = "INFO"
    admin_secret: str = ""
    allowed_origins: str = "*"

    @property
    def allowed_workspaces(self) -> frozenset[str]:
        return frozenset(_split_csv(self.bitbucket_allowed_workspaces))

    @property
    def skip_extension_list(self) -> list[str]:
        return _split_csv(self.skip_extensions)

    @property
    def skip_path_list(self) -> list[str]:
        return _split_csv(self.skip_paths)

    @property
    def skip_pattern_list(self) -> list[str]:
        return _split_csv(self.skip_file_patterns)

    @property
    def cors_origins(self) -> list[str]:
        return _split_csv(self.allowed_origins) or ["*"]

    @property
    def workspace_credentials(self) -> dict[str, tuple[str, str]]:
        """Per-workspace Bitbucket credentials, including the default workspace."""
        credentials: dict[str, tuple[str, str]] = {}
        if self.bitbucket_workspace_credentials:
            try:
                raw = json.loads(self.bitbucket_workspace_credentials)
            except json.JSONDecodeError:
                logger.warning("BITBUCKET_WORKSPACE_CREDENTIALS is not valid JSON — ignoring")
                raw = {}
            if not isinstance(raw, dict):
                logger.warning("BITBUCKET_WORKSPACE_CREDENTIALS is not a JSON object — ignoring")
                raw = {}
            for workspace, entry in raw.items():
                if not isinstance(entry, dict):
                    logger.warning("Credentials for workspace %r are not an object — ignoring", workspace)
                    continue
                credentials[workspace] = (
                    str(entry.get("username", "")),
                    str(entry.get("app_password", "")),
                )
        if self.bitbucket_workspace:
            credentials.setdefault(
                self.bitbucket_workspace,
                (self.bitbucket_username, self.bitbucket_app_password),
            )
        return credentials

    @property
    def github_private_key(self) -> str:
        """Read the GitHub App private key from file."""
        key_path = Path(self.github_app_private_key_path)
        if not key_path.exists():
            logger.warning(
                "GitHub App private key not found at %s — GitHub API calls will fail",
                key_path,
            )
            return ""
        return key_path.read_text(encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton."""
    return Settings()
