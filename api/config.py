"""
API configuration settings.
"""

from typing import Dict

from pydantic_settings import BaseSettings


class APIConfig(BaseSettings):
    """API configuration settings."""

    # API Settings
    api_title: str = "NovelNest Inventory API"
    api_version: str = "1.0.0"
    api_description: str = "Create, update and delete catalog books owned by authenticated users"

    # Server Settings
    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False

    # Security Settings
    # Comma-separated "token:user_id" pairs; the user id is the verified owner identity
    api_tokens: str = ""

    # Ownership disclosure: when False a non-owner sees the same 404 as a missing book
    disclose_forbidden: bool = False

    # CORS Settings
    cors_origins: list = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list = ["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"]
    cors_allow_headers: list = ["Content-Type", "Authorization"]

    # Logging
    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "extra": "ignore"  # Ignore extra fields from .env
    }

    def token_table(self) -> Dict[str, str]:
        """Map of bearer token to user id."""
        table = {}
        for pair in self.api_tokens.split(","):
            token, sep, user_id = pair.strip().partition(":")
            if sep and token.strip() and user_id.strip():
                table[token.strip()] = user_id.strip()
        return table


# Global config instance
config = APIConfig()
