"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Mock modes enable local development without external services.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "Marketplace Upload Broker"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Using a list enables key rotation without downtime."
    )

    # Upload Policy
    upload_allowed_content_types: str = Field(
        default="image/jpeg,image/png,image/gif,image/webp",
        description="Comma-separated MIME types callers may upload. 'image/*' style wildcards are allowed."
    )
    upload_max_size_bytes: int = Field(
        default=5 * 1024 * 1024,
        gt=0,
        description="Maximum object size in bytes."
    )
    upload_token_ttl_seconds: int = Field(
        default=600,
        gt=0,
        le=3600,
        description="Lifetime of a scoped upload token. Tokens can't be revoked, so keep this short."
    )
    upload_namespace: str = Field(
        default="",
        description="Required pathname prefix for all uploads. Empty means no restriction."
    )
    upload_allow_unknown_content_type: bool = Field(
        default=False,
        description="Accept uploads that declare no content type (stored as application/octet-stream)."
    )
    upload_allowed_extensions: str = Field(
        default="",
        description="Comma-separated file extensions allowed in pathnames. Empty means any."
    )
    upload_max_pathname_length: int = Field(
        default=1024,
        gt=0,
        description="Maximum pathname length in bytes (S3 key limit)."
    )

    # Token Signing
    upload_token_secret: str = Field(
        default="",
        description="HMAC secret used to sign scoped upload tokens. Required for brokered uploads."
    )
    upload_token_issuer: str = Field(
        default="upload-broker",
        description="Issuer claim written into and required from upload tokens."
    )

    # Completion Callbacks
    completion_signing_secret: str = Field(
        default="",
        description="Shared secret the storage provider signs completion callbacks with."
    )
    completion_require_token: bool = Field(
        default=True,
        description="Reject completion events that don't carry the upload token back."
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="MARKETPLACE",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="UPLOADS",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real Snowflake connection. Enables local dev without DB."
    )

    # R2/S3 Storage Configuration
    r2_account_id: str = Field(
        default="",
        description="Cloudflare account ID for R2"
    )
    r2_access_key_id: str = Field(
        default="",
        description="R2 access key ID (the static write credential used by proxy uploads)"
    )
    r2_secret_access_key: str = Field(
        default="",
        description="R2 secret access key"
    )
    r2_bucket_name: str = Field(
        default="marketplace-uploads",
        description="R2 bucket name for uploaded objects"
    )
    r2_endpoint_url: Optional[str] = Field(
        default=None,
        description="R2 endpoint URL. Auto-constructed from account_id if not provided."
    )
    r2_public_base_url: Optional[str] = Field(
        default=None,
        description="Public base URL objects are served from (custom domain or r2.dev URL)."
    )
    r2_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real R2. Enables local dev without object storage."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @staticmethod
    def _split(value: str) -> list[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return self._split(self.api_keys)

    @property
    def upload_allowed_content_types_list(self) -> list[str]:
        return [t.lower() for t in self._split(self.upload_allowed_content_types)]

    @property
    def upload_allowed_extensions_list(self) -> list[str]:
        return [e.lower().lstrip(".") for e in self._split(self.upload_allowed_extensions)]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return self._split(self.cors_origins)

    @property
    def r2_endpoint(self) -> str:
        """
        Construct R2 endpoint URL from account ID.

        R2 endpoints follow the pattern: https://{account_id}.r2.cloudflarestorage.com
        """
        if self.r2_endpoint_url:
            return self.r2_endpoint_url
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"

    @property
    def storage_configured(self) -> bool:
        """Whether the static storage credential is available."""
        if self.r2_mock_mode:
            return True
        return bool(
            (self.r2_account_id or self.r2_endpoint_url)
            and self.r2_access_key_id
            and self.r2_secret_access_key
        )

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields.
        """
        missing = []

        if not self.upload_token_secret:
            missing.append("UPLOAD_TOKEN_SECRET")

        if not self.completion_signing_secret:
            missing.append("COMPLETION_SIGNING_SECRET")

        # Snowflake only required if not in mock mode
        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            if not (
                self.snowflake_password
                or self.snowflake_private_key_path
                or self.snowflake_private_key_base64
            ):
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        # R2 only required if not in mock mode
        if not self.r2_mock_mode:
            if not (self.r2_account_id or self.r2_endpoint_url):
                missing.append("R2_ACCOUNT_ID")
            if not self.r2_access_key_id:
                missing.append("R2_ACCESS_KEY_ID")
            if not self.r2_secret_access_key:
                missing.append("R2_SECRET_ACCESS_KEY")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once per process and never change afterwards.
    For tests, call get_settings.cache_clear() or override the dependency.
    """
    return Settings()
