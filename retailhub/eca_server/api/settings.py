"""
HTTP settings for the ECA server.

Uses pydantic-settings for environment variable loading (prefix ECA_API_).
List and object values are read as JSON, e.g.

    ECA_API_CORS_ORIGINS='["https://backoffice.example.com"]'
    ECA_API_API_KEYS='[{"name": "erp", "key_hash": "<sha256>", "tenant_id": "acme",
                       "permissions": ["webhook:sales"]}]'
"""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ApiKeyConfig(BaseModel):
    """A configured API key. Only the sha256 hash of the key is stored."""

    name: str = Field(..., description="Integration name, used in logs")
    key_hash: str = Field(..., description="Hex sha256 of the key")
    tenant_id: str = Field(..., min_length=1, description="Tenant every request with this key writes to")
    prefix: str | None = Field(None, description="First characters of the key, for support")
    permissions: list[str] = Field(default_factory=list, description="e.g. webhook:sales, webhook:*")


class Settings(BaseSettings):
    """HTTP configuration loaded from environment."""

    # Bind
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, description="Bind port")

    # Tenancy
    default_tenant_id: str = Field(default="default", description="Tenant when X-Tenant-ID is absent")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Webhook authentication
    webhook_secret: str | None = Field(default=None, description="Shared bearer secret")
    webhook_secret_tenant_id: str | None = Field(
        default=None, description="Tenant the bearer secret is bound to (unbound when unset)"
    )
    api_keys: list[ApiKeyConfig] = Field(default_factory=list, description="Scoped API keys")

    # Pagination defaults
    default_page_size: int = Field(default=50, description="Default items per page")
    max_page_size: int = Field(default=200, description="Maximum items per page")

    model_config = {"env_prefix": "ECA_API_"}

    @property
    def auth_enabled(self) -> bool:
        return bool(self.webhook_secret) or bool(self.api_keys)
