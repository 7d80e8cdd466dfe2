"""
Configuration for the Folio HTTP API.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP API configuration loaded from environment."""

    title: str = Field(default="Folio", description="OpenAPI title")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Search limits
    default_search_limit: int = Field(default=10, description="Default page search results")
    max_search_limit: int = Field(default=50, description="Maximum page search results")

    model_config = {"env_prefix": "FOLIO_API_"}
