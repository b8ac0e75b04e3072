"""
API tests for the upload routes.

The app runs with in-memory storage and the mock Snowflake connection;
dependencies are swapped through FastAPI's dependency_overrides.
"""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import COMPLETION_SECRET, TOKEN_SECRET, completion_body
from upload_broker.api.dependencies import (
    get_reference_repository,
    get_storage_client,
    get_token_issuer,
)
from upload_broker.config.settings import Settings, get_settings
from upload_broker.core.uploads.models import UploadPolicy
from upload_broker.core.uploads.signatures import sign_body
from upload_broker.core.uploads.tokens import TokenIssuer
from upload_broker.main import create_app


API_HEADERS = {"X-API-Key": "test-key"}


def make_settings(**overrides) -> Settings:
    values = {
        "api_keys": "test-key",
        "upload_allowed_content_types": "image/png,image/jpeg",
        "upload_max_size_bytes": 1024,
        "upload_token_secret": TOKEN_SECRET,
        "completion_signing_secret": COMPLETION_SECRET,
        "snowflake_mock_mode": True,
        "r2_mock_mode": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings, storage, repository):
    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_storage_client] = lambda: storage
    app.dependency_overrides[get_reference_repository] = lambda: repository
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def request_token(client, **body):
    payload = {"pathname": "shops/abc/logo.png", "content_type": "image/png", "size": 512}
    payload.update(body)
    return client.post("/api/v1/uploads/token", json=payload, headers=API_HEADERS)


def post_completion(client, body: bytes, secret: str = COMPLETION_SECRET):
    return client.post(
        "/api/v1/uploads/complete",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Upload-Signature": sign_body(secret, body),
        },
    )


# ---------------------------------------------------------------------------
# Token issuance
# ---------------------------------------------------------------------------

class TestIssueToken:
    """Tests for POST /api/v1/uploads/token."""

    def test_issues_token(self, client):
        response = request_token(client)

        assert response.status_code == 200
        data = response.json()
        assert data["pathname"] == "shops/abc/logo.png"
        assert data["content_type"] == "image/png"
        assert data["upload_url"].startswith("mock://storage/shops/abc/logo.png")
        assert data["upload_method"] == "PUT"
        assert data["upload_headers"] == {"Content-Type": "image/png"}
        assert data["token"].count(".") == 2

    def test_upload_url_is_bound_to_declared_size(self, client):
        response = request_token(client, size=512)
        assert "content_length=512" in response.json()["upload_url"]

    def test_upload_url_without_size_is_not_size_bound(self, client):
        response = client.post(
            "/api/v1/uploads/token",
            json={"pathname": "shops/abc/logo.png", "content_type": "image/png"},
            headers=API_HEADERS,
        )
        assert "content_length" not in response.json()["upload_url"]

    def test_upload_url_expires_with_the_token(self, client, app, clock):
        """The presigned URL lifetime follows the issuer, not the settings."""
        issuer = TokenIssuer(
            policy=UploadPolicy(
                allowed_content_types=frozenset({"image/png"}),
                max_size_bytes=1024,
                token_ttl_seconds=120,
            ),
            signing_secret=TOKEN_SECRET,
            clock=clock,
        )
        app.dependency_overrides[get_token_issuer] = lambda: issuer

        response = request_token(client)

        assert response.status_code == 200
        assert "expires=120" in response.json()["upload_url"]
        assert "expires=600" not in response.json()["upload_url"]

    def test_requires_api_key(self, client):
        response = client.post("/api/v1/uploads/token", json={"pathname": "a.png"})
        assert response.status_code == 403

    def test_rejects_wrong_api_key(self, client):
        response = client.post(
            "/api/v1/uploads/token",
            json={"pathname": "a.png"},
            headers={"X-API-Key": "nope"},
        )
        assert response.status_code == 403

    def test_policy_rejection_is_structured(self, client):
        response = request_token(client, content_type="text/html")

        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "content_type_not_allowed"

    def test_traversal_is_rejected(self, client):
        response = request_token(client, pathname="../etc/passwd")

        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "path_traversal"

    def test_oversized_declaration_is_413(self, client):
        response = request_token(client, size=4096)

        assert response.status_code == 413
        assert response.json()["detail"]["reason"] == "object_too_large"

    def test_string_context_must_be_json_object(self, client):
        response = request_token(client, context="[1, 2]")

        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "invalid_context"

    def test_missing_signing_secret_is_500(self, client, app):
        app.dependency_overrides[get_settings] = lambda: make_settings(upload_token_secret="")
        response = request_token(client)
        assert response.status_code == 500


# ---------------------------------------------------------------------------
# Completion callback
# ---------------------------------------------------------------------------

class TestCompletion:
    """Tests for POST /api/v1/uploads/complete."""

    def _completed(self, client, token_response, locator="mock://storage/shops/abc/logo.png", **kwargs):
        data = token_response.json()
        body = completion_body(
            locator=locator,
            pathname=data["pathname"],
            content_type=data["content_type"],
            size=512,
            token=data["token"],
            **kwargs,
        )
        return post_completion(client, body)

    def test_full_brokered_flow(self, client, snowflake_connection):
        token_response = request_token(client, context={"shop_id": "abc"})
        response = self._completed(client, token_response)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "created"
        assert data["locator"] == "mock://storage/shops/abc/logo.png"
        assert snowflake_connection._reference_count() == 1

        reference = client.get(
            "/api/v1/uploads/references",
            params={"locator": data["locator"]},
            headers=API_HEADERS,
        )
        assert reference.status_code == 200
        assert reference.json()["context"] == {"shop_id": "abc", "uploaded_by": "anonymous"}
        assert reference.json()["reference_id"] == data["reference_id"]

    def test_uploaded_by_comes_from_user_header(self, client):
        token_response = client.post(
            "/api/v1/uploads/token",
            json={"pathname": "shops/abc/logo.png", "content_type": "image/png"},
            headers={**API_HEADERS, "X-User-Id": "user-42"},
        )
        data = self._completed(client, token_response).json()

        reference = client.get(
            "/api/v1/uploads/references",
            params={"locator": data["locator"]},
            headers=API_HEADERS,
        )
        assert reference.json()["context"]["uploaded_by"] == "user-42"

    def test_redelivery_is_duplicate(self, client, snowflake_connection):
        token_response = request_token(client)
        first = self._completed(client, token_response)
        second = self._completed(client, token_response)

        assert first.json()["status"] == "created"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert second.json()["reference_id"] == first.json()["reference_id"]
        assert snowflake_connection._reference_count() == 1

    def test_bad_signature_is_discarded(self, client, snowflake_connection):
        token = request_token(client).json()["token"]
        body = completion_body(locator="mock://storage/shops/abc/logo.png", pathname="shops/abc/logo.png", token=token)

        response = post_completion(client, body, secret="not-the-provider")

        assert response.status_code == 200
        assert response.json() == {
            "acknowledged": True,
            "status": "discarded",
            "locator": None,
            "reference_id": None,
            "url": None,
            "reason": "authenticity_failure",
        }
        assert snowflake_connection._reference_count() == 0

    def test_missing_signature_is_discarded(self, client):
        response = client.post("/api/v1/uploads/complete", content=b"{}")
        assert response.status_code == 200
        assert response.json()["status"] == "discarded"

    def test_malformed_context_is_discarded(self, client, snowflake_connection):
        response = self._completed(client, request_token(client), token_payload=json.dumps({"shop_id": "evil"}))

        assert response.status_code == 200
        assert response.json()["reason"] == "malformed_context"
        assert snowflake_connection._reference_count() == 0

    def test_persistence_failure_asks_for_redelivery(self, client, app):
        class FailingRepository:
            def record(self, reference):
                raise RuntimeError("warehouse suspended")

        app.dependency_overrides[get_reference_repository] = lambda: FailingRepository()

        response = self._completed(client, request_token(client))
        assert response.status_code == 503


# ---------------------------------------------------------------------------
# Proxy uploads
# ---------------------------------------------------------------------------

class TestProxyUpload:
    """Tests for POST /api/v1/uploads/proxy."""

    def test_uploads_file(self, client, storage):
        response = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("logo.png", b"\x89PNG", "image/png")},
            data={"filename": "shops/abc/logo.png"},
            headers=API_HEADERS,
        )

        assert response.status_code == 201
        assert response.json() == {
            "url": "mock://storage/shops/abc/logo.png",
            "pathname": "shops/abc/logo.png",
            "size": 4,
            "content_type": "image/png",
        }
        assert storage._get_object("shops/abc/logo.png") == (b"\x89PNG", "image/png")

    def test_uses_part_filename_by_default(self, client):
        response = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("logo.png", b"\x89PNG", "image/png")},
            headers=API_HEADERS,
        )
        assert response.status_code == 201
        assert response.json()["pathname"] == "logo.png"

    def test_random_suffix(self, client):
        response = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("logo.png", b"\x89PNG", "image/png")},
            data={"filename": "shops/logo.png", "add_random_suffix": "true"},
            headers=API_HEADERS,
        )
        assert response.status_code == 201
        pathname = response.json()["pathname"]
        assert pathname.startswith("shops/") and pathname.endswith(".png")
        assert pathname != "shops/logo.png"

    def test_oversized_file_is_rejected(self, client, storage):
        response = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("big.png", b"x" * 2048, "image/png")},
            headers=API_HEADERS,
        )
        assert response.status_code == 413
        assert storage._objects == {}

    def test_disallowed_type_is_rejected(self, client):
        response = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("page.html", b"<html>", "text/html")},
            headers=API_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "content_type_not_allowed"

    def test_requires_api_key(self, client):
        response = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("logo.png", b"\x89PNG", "image/png")},
        )
        assert response.status_code == 403


# ---------------------------------------------------------------------------
# Deletion and lookup
# ---------------------------------------------------------------------------

class TestDelete:
    """Tests for DELETE /api/v1/uploads."""

    def test_delete_removes_object_and_reference(self, client, storage, snowflake_connection):
        token_response = request_token(client)
        proxied = client.post(
            "/api/v1/uploads/proxy",
            files={"file": ("logo.png", b"\x89PNG", "image/png")},
            data={"filename": "shops/abc/logo.png"},
            headers=API_HEADERS,
        )
        url = proxied.json()["url"]
        data = token_response.json()
        post_completion(client, completion_body(
            locator=url,
            pathname=data["pathname"],
            content_type="image/png",
            size=4,
            token=data["token"],
        ))
        assert snowflake_connection._reference_count() == 1

        response = client.request("DELETE", "/api/v1/uploads", json={"url": url}, headers=API_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"success": True, "reference_deleted": True}
        assert storage._get_object("shops/abc/logo.png") is None
        assert snowflake_connection._reference_count() == 0

    def test_delete_is_idempotent(self, client):
        for _ in range(2):
            response = client.request(
                "DELETE",
                "/api/v1/uploads",
                json={"url": "mock://storage/never/existed.png"},
                headers=API_HEADERS,
            )
            assert response.status_code == 200
            assert response.json() == {"success": True, "reference_deleted": False}

    def test_delete_requires_url(self, client):
        response = client.request("DELETE", "/api/v1/uploads", json={"url": ""}, headers=API_HEADERS)
        assert response.status_code == 422


class TestReferenceLookup:
    def test_missing_reference_is_404(self, client):
        response = client.get(
            "/api/v1/uploads/references",
            params={"locator": "mock://storage/none.png"},
            headers=API_HEADERS,
        )
        assert response.status_code == 404


class TestReferenceStoreUnavailable:
    """Routes backed by a Snowflake account that refuses connections."""

    @pytest.fixture
    def app(self, app):
        # real repository dependency, with credentials that can never connect
        app.dependency_overrides.pop(get_reference_repository)
        app.dependency_overrides[get_settings] = lambda: make_settings(
            snowflake_mock_mode=False,
            snowflake_account="acct",
            snowflake_user="svc",
            snowflake_password="",
            snowflake_private_key_path=None,
            snowflake_private_key_base64=None,
        )
        return app

    def _completion(self, client) -> bytes:
        data = request_token(client).json()
        return completion_body(
            locator="mock://storage/shops/abc/logo.png",
            pathname=data["pathname"],
            content_type=data["content_type"],
            size=512,
            token=data["token"],
        )

    def test_token_issuance_does_not_need_the_store(self, client):
        assert request_token(client).status_code == 200

    def test_authentic_completion_asks_for_redelivery(self, client):
        response = post_completion(client, self._completion(client))
        assert response.status_code == 503

    def test_forged_completion_is_still_discarded(self, client):
        """Authenticity is decided before the store is contacted."""
        body = self._completion(client)

        response = post_completion(client, body, secret="not-the-provider")

        assert response.status_code == 200
        assert response.json()["status"] == "discarded"
        assert response.json()["reason"] == "authenticity_failure"

    def test_unsigned_garbage_is_still_discarded(self, client):
        response = client.post(
            "/api/v1/uploads/complete",
            content=b"not json",
            headers={"X-Upload-Signature": "00"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "discarded"

    def test_lookup_is_503(self, client):
        response = client.get(
            "/api/v1/uploads/references",
            params={"locator": "mock://storage/shops/abc/logo.png"},
            headers=API_HEADERS,
        )
        assert response.status_code == 503

    def test_delete_is_503(self, client):
        response = client.request(
            "DELETE",
            "/api/v1/uploads",
            json={"url": "mock://storage/shops/abc/logo.png"},
            headers=API_HEADERS,
        )
        assert response.status_code == 503

    def test_not_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 503
        checks = {c["name"]: c["status"] for c in response.json()["checks"]}
        assert checks["database"] == "error"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    def test_liveness(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_secrets(self, client, app):
        app.dependency_overrides[get_settings] = lambda: make_settings(completion_signing_secret="")
        response = client.get("/health/ready")

        assert response.status_code == 503
        checks = {c["name"]: c["status"] for c in response.json()["checks"]}
        assert checks["completion_signing"] == "error"
        assert checks["token_signing"] == "ok"
