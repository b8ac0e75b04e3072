"""
Shared fixtures for the upload broker tests.

Everything here runs in memory: the mock Snowflake connection stands in
for the reference table and the mock storage client for R2.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from upload_broker.core.uploads.models import CompletionEvent, UploadPolicy
from upload_broker.core.uploads.policy import PolicyValidator
from upload_broker.core.uploads.reconciler import CompletionReconciler
from upload_broker.core.uploads.signatures import sign_body
from upload_broker.core.uploads.tokens import TokenIssuer
from upload_broker.infrastructure.snowflake.client import MockSnowflakeConnection
from upload_broker.infrastructure.snowflake.repositories.references import ReferenceRepository
from upload_broker.infrastructure.storage.client import MockStorageClient


TOKEN_SECRET = "test-token-secret-0123456789abcdef0123456789"
COMPLETION_SECRET = "test-completion-secret-0123456789abcdef0123"


class FixedClock:
    """A clock tests can move forward by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def completion_body(
    locator: str,
    pathname: Optional[str] = None,
    content_type: Optional[str] = "image/png",
    size: Optional[int] = 1024,
    token: Optional[str] = None,
    token_payload: Any = None,
) -> bytes:
    """Build a provider completion callback body."""
    blob: dict[str, Any] = {"locator": locator}
    if pathname is not None:
        blob["pathname"] = pathname
    if content_type is not None:
        blob["content_type"] = content_type
    if size is not None:
        blob["size"] = size

    payload: dict[str, Any] = {"blob": blob}
    if token is not None:
        payload["token"] = token
    if token_payload is not None:
        payload["token_payload"] = token_payload

    return json.dumps({"type": "upload.completed", "payload": payload}).encode("utf-8")


def signed_event(body: bytes, secret: str = COMPLETION_SECRET) -> CompletionEvent:
    return CompletionEvent(body=body, signature=sign_body(secret, body))


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> UploadPolicy:
    return UploadPolicy(
        allowed_content_types=frozenset({"image/png", "image/jpeg"}),
        max_size_bytes=5 * 1024 * 1024,
        token_ttl_seconds=600,
    )


@pytest.fixture
def validator(policy: UploadPolicy) -> PolicyValidator:
    return PolicyValidator(policy)


@pytest.fixture
def issuer(policy: UploadPolicy, clock: FixedClock) -> TokenIssuer:
    return TokenIssuer(policy=policy, signing_secret=TOKEN_SECRET, clock=clock)


@pytest.fixture
def snowflake_connection() -> MockSnowflakeConnection:
    return MockSnowflakeConnection()


@pytest.fixture
def repository(snowflake_connection: MockSnowflakeConnection) -> ReferenceRepository:
    return ReferenceRepository(snowflake_connection)


@pytest.fixture
def storage() -> MockStorageClient:
    return MockStorageClient()


@pytest.fixture
def reconciler(
    repository: ReferenceRepository,
    issuer: TokenIssuer,
    clock: FixedClock,
) -> CompletionReconciler:
    return CompletionReconciler(
        store=repository,
        signing_secret=COMPLETION_SECRET,
        token_issuer=issuer,
        clock=clock,
    )
