"""
Unit tests for the storage clients.

The R2 client is exercised with botocore's Stubber, so no network calls
are made; presigned URLs are generated locally by botocore anyway.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.stub import Stubber

from upload_broker.infrastructure.storage.client import (
    MockStorageClient,
    R2StorageClient,
    StorageConfig,
    StorageError,
    create_storage_client,
)


@pytest.fixture
def r2_config() -> StorageConfig:
    return StorageConfig(
        access_key_id="test-access-key",
        secret_access_key="test-secret-key",
        bucket_name="marketplace-uploads",
        endpoint_url="https://account.r2.cloudflarestorage.com",
        public_base_url="https://cdn.example.com",
    )


@pytest.fixture
def r2_client(r2_config) -> R2StorageClient:
    return R2StorageClient(r2_config)


class TestMockStorageClient:
    """Tests for the in-memory client."""

    def test_put_and_delete(self):
        client = MockStorageClient()
        path = asyncio.run(client.put_object("a/b.png", b"data", "image/png"))
        assert path == "a/b.png"
        assert client._get_object("a/b.png") == (b"data", "image/png")

        asyncio.run(client.delete_object(client.public_url("a/b.png")))
        assert client._get_object("a/b.png") is None

    def test_delete_is_idempotent(self):
        client = MockStorageClient()
        asyncio.run(client.delete_object("never/existed.png"))
        asyncio.run(client.delete_object("never/existed.png"))

    def test_upload_url(self):
        client = MockStorageClient()
        url = asyncio.run(client.generate_upload_url("a/b c.png", "image/png", 600))
        assert url == "mock://storage/a/b%20c.png?expires=600"

    def test_upload_url_carries_declared_size(self):
        client = MockStorageClient()
        url = asyncio.run(client.generate_upload_url("a/b.png", "image/png", 120, content_length=512))
        assert url == "mock://storage/a/b.png?expires=120&content_length=512"

    def test_pathname_round_trip(self):
        client = MockStorageClient()
        assert client.pathname_for(client.public_url("a/b c.png")) == "a/b c.png"
        assert client.pathname_for("a/b.png") == "a/b.png"


class TestR2StorageClient:
    """Tests for the R2 client."""

    def test_public_url_uses_base(self, r2_client):
        assert r2_client.public_url("shops/a b.png") == "https://cdn.example.com/shops/a%20b.png"

    def test_public_url_without_base(self, r2_config):
        r2_config.public_base_url = None
        client = R2StorageClient(r2_config)
        assert client.public_url("a.png") == (
            "https://account.r2.cloudflarestorage.com/marketplace-uploads/a.png"
        )

    def test_pathname_for(self, r2_client):
        assert r2_client.pathname_for("https://cdn.example.com/shops/a%20b.png") == "shops/a b.png"
        assert r2_client.pathname_for("shops/a.png") == "shops/a.png"

    def test_presigned_url_is_bound_to_key_and_expiry(self, r2_client):
        url = asyncio.run(r2_client.generate_upload_url("shops/logo.png", "image/png", 600))
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.path == "/marketplace-uploads/shops/logo.png"
        assert query["X-Amz-Expires"] == ["600"]
        assert "content-type" in query["X-Amz-SignedHeaders"][0]

    def test_presigned_url_binds_declared_size(self, r2_client):
        """A declared size is signed as Content-Length, so a larger body fails the signature."""
        url = asyncio.run(r2_client.generate_upload_url(
            "shops/logo.png", "image/png", 600, content_length=2048,
        ))
        signed_headers = parse_qs(urlparse(url).query)["X-Amz-SignedHeaders"][0].split(";")

        assert "content-length" in signed_headers
        assert "content-type" in signed_headers

    def test_presigned_url_without_size_leaves_length_open(self, r2_client):
        url = asyncio.run(r2_client.generate_upload_url("shops/logo.png", "image/png", 600))
        signed_headers = parse_qs(urlparse(url).query)["X-Amz-SignedHeaders"][0].split(";")
        assert "content-length" not in signed_headers

    def test_put_object(self, r2_client):
        with Stubber(r2_client._s3_client) as stubber:
            stubber.add_response(
                "put_object",
                {},
                {
                    "Bucket": "marketplace-uploads",
                    "Key": "shops/logo.png",
                    "Body": b"data",
                    "ContentType": "image/png",
                },
            )
            path = asyncio.run(r2_client.put_object("shops/logo.png", b"data", "image/png"))
            stubber.assert_no_pending_responses()

        assert path == "shops/logo.png"

    def test_put_object_failure(self, r2_client):
        with Stubber(r2_client._s3_client) as stubber:
            stubber.add_client_error("put_object", service_error_code="InternalError")
            with pytest.raises(StorageError):
                asyncio.run(r2_client.put_object("shops/logo.png", b"data", "image/png"))

    def test_delete_object_by_url(self, r2_client):
        with Stubber(r2_client._s3_client) as stubber:
            stubber.add_response(
                "delete_object",
                {},
                {"Bucket": "marketplace-uploads", "Key": "shops/logo.png"},
            )
            asyncio.run(r2_client.delete_object("https://cdn.example.com/shops/logo.png"))
            stubber.assert_no_pending_responses()


class TestFactory:
    def test_mock_mode(self):
        assert isinstance(create_storage_client(mock_mode=True), MockStorageClient)

    def test_config_required(self):
        with pytest.raises(ValueError):
            create_storage_client()
