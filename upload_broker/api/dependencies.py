"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Every broker component is built here from the cached
Settings and handed its configuration explicitly, so none of them reads
global state on its own.

Each dependency is a function that FastAPI calls when needed.
"""

import logging
from typing import Annotated, Generator

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.uploads.models import UploadPolicy
from ..core.uploads.policy import PolicyValidator
from ..core.uploads.proxy import ProxyUploader
from ..core.uploads.reconciler import CompletionReconciler
from ..core.uploads.tokens import TokenIssuer
from ..infrastructure.snowflake.client import (
    LazySnowflakeConnection,
    MockSnowflakeConnection,
)
from ..infrastructure.snowflake.repositories.references import (
    ReferenceRepository,
    SnowflakeConfig,
)
from ..infrastructure.storage.client import StorageClient, StorageConfig, create_storage_client

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Global mock instances (shared across requests for testing)
_mock_storage_client = None
_mock_snowflake_connection = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8] if api_key else ""}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# ---------------------------------------------------------------------------
# Upload Policy and Broker Components
# ---------------------------------------------------------------------------

def get_upload_policy(
    settings: Annotated[Settings, Depends(get_settings)],
) -> UploadPolicy:
    """Build the immutable upload policy from settings."""
    return UploadPolicy(
        allowed_content_types=frozenset(settings.upload_allowed_content_types_list),
        max_size_bytes=settings.upload_max_size_bytes,
        token_ttl_seconds=settings.upload_token_ttl_seconds,
        namespace=settings.upload_namespace,
        allow_unknown_content_type=settings.upload_allow_unknown_content_type,
        max_pathname_length=settings.upload_max_pathname_length,
        allowed_extensions=frozenset(settings.upload_allowed_extensions_list),
    )


def get_policy_validator(
    policy: Annotated[UploadPolicy, Depends(get_upload_policy)],
) -> PolicyValidator:
    return PolicyValidator(policy)


def get_token_issuer(
    settings: Annotated[Settings, Depends(get_settings)],
    policy: Annotated[UploadPolicy, Depends(get_upload_policy)],
) -> TokenIssuer:
    """
    Provide the token issuer.

    Stateless: a new instance per request is equivalent to a shared one.
    """
    return TokenIssuer(
        policy=policy,
        signing_secret=settings.upload_token_secret,
        issuer=settings.upload_token_issuer,
    )


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

def get_storage_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> StorageClient:
    """
    Provide storage client for presigned URLs, proxy uploads and deletes.

    Returns either R2 client or mock client based on settings.

    In mock mode, we reuse the same client across requests
    so that uploaded objects persist during the testing session.
    """
    global _mock_storage_client

    if settings.r2_mock_mode:
        if _mock_storage_client is None:
            _mock_storage_client = create_storage_client(mock_mode=True)
            logger.info("Created shared mock storage client for session")
        return _mock_storage_client

    if not settings.storage_configured:
        logger.error("Storage credentials are not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Storage not configured",
        )

    config = StorageConfig(
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        bucket_name=settings.r2_bucket_name,
        endpoint_url=settings.r2_endpoint,
        public_base_url=settings.r2_public_base_url,
    )
    client = create_storage_client(config=config)
    logger.debug("Created R2 storage client")

    return client


def get_reference_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[ReferenceRepository, None, None]:
    """
    Provide ReferenceRepository with database connection.

    This is a generator function (yields instead of returns) because
    we need to close the connection after the request.

    In mock mode, we reuse the same connection across requests
    so that data persists during the testing session.
    """
    global _mock_snowflake_connection

    if settings.snowflake_mock_mode:
        if _mock_snowflake_connection is None:
            _mock_snowflake_connection = MockSnowflakeConnection()
            logger.info("Created shared mock Snowflake connection for session")

        yield ReferenceRepository(_mock_snowflake_connection)
    else:
        config = SnowflakeConfig(
            account=settings.snowflake_account,
            user=settings.snowflake_user,
            password=settings.snowflake_password or None,
            private_key_path=settings.snowflake_private_key_path,
            private_key_base64=settings.snowflake_private_key_base64,
            database=settings.snowflake_database,
            schema=settings.snowflake_schema,
            warehouse=settings.snowflake_warehouse,
            role=settings.snowflake_role,
        )

        # Connects on first query, so a failure lands inside the repository call
        conn = LazySnowflakeConnection(config)
        try:
            logger.debug("Created ReferenceRepository with lazy Snowflake connection")
            yield ReferenceRepository(conn)
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Composed Services
# ---------------------------------------------------------------------------

def get_completion_reconciler(
    settings: Annotated[Settings, Depends(get_settings)],
    issuer: Annotated[TokenIssuer, Depends(get_token_issuer)],
    repository: Annotated[ReferenceRepository, Depends(get_reference_repository)],
    storage: Annotated[StorageClient, Depends(get_storage_client)],
) -> CompletionReconciler:
    def locate(locator: str) -> str:
        return locator if "://" in locator else storage.public_url(locator)

    return CompletionReconciler(
        store=repository,
        signing_secret=settings.completion_signing_secret,
        token_issuer=issuer,
        require_token=settings.completion_require_token,
        locate=locate,
    )


def get_proxy_uploader(
    validator: Annotated[PolicyValidator, Depends(get_policy_validator)],
    storage: Annotated[StorageClient, Depends(get_storage_client)],
) -> ProxyUploader:
    return ProxyUploader(validator=validator, storage=storage)


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
PolicyValidatorDep = Annotated[PolicyValidator, Depends(get_policy_validator)]
TokenIssuerDep = Annotated[TokenIssuer, Depends(get_token_issuer)]
StorageClientDep = Annotated[StorageClient, Depends(get_storage_client)]
ReferenceRepositoryDep = Annotated[ReferenceRepository, Depends(get_reference_repository)]
CompletionReconcilerDep = Annotated[CompletionReconciler, Depends(get_completion_reconciler)]
ProxyUploaderDep = Annotated[ProxyUploader, Depends(get_proxy_uploader)]
