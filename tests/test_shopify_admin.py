"""Tests for credentials, the Admin GraphQL client and the photo relay."""

import hashlib

import pytest
import requests

from conftest import GRAPHQL_URL, SHOP, STAGED_URL, FakeResponse
from config import Settings
from errors import (
    ConfigurationError,
    FileRegistrationError,
    ShopifyError,
    ShopifyUserError,
    StagedUploadError,
    TransportFailure,
    UploadError,
)
from shopify_admin import (
    SqliteSessionStore,
    StaticCredentials,
    credentials_from_settings,
    register_webhooks,
    relay_photo,
)

PHOTO = b"\xff\xd8\xff\xe0\x00\x10JFIF" + bytes(range(256)) * 4


class TestCredentials:
    def test_static(self):
        creds = StaticCredentials(SHOP, "shpat_x").get()
        assert creds.shop == SHOP
        assert creds.access_token == "shpat_x"

    def test_static_same_shop(self):
        assert StaticCredentials(SHOP, "shpat_x").get(SHOP).shop == SHOP

    def test_static_other_shop_rejected(self):
        with pytest.raises(ConfigurationError):
            StaticCredentials(SHOP, "shpat_x").get("other.myshopify.com")

    def test_static_missing_token(self):
        with pytest.raises(ConfigurationError):
            StaticCredentials(SHOP, "").get()

    def test_static_uses_header_shop_when_unconfigured(self):
        assert StaticCredentials("", "shpat_x").get(SHOP).shop == SHOP

    def test_sqlite_sessions(self, tmp_path):
        store = SqliteSessionStore(str(tmp_path / "sessions.db"))
        store.init()
        store.save(SHOP, "shpat_db")
        store.save("second.myshopify.com", "shpat_2")
        assert store.get(SHOP).access_token == "shpat_db"
        assert store.get("second.myshopify.com").access_token == "shpat_2"
        assert store.get().access_token in ("shpat_db", "shpat_2")

    def test_sqlite_no_session(self, tmp_path):
        store = SqliteSessionStore(str(tmp_path / "sessions.db"))
        store.init()
        with pytest.raises(ConfigurationError):
            store.get(SHOP)

    def test_store_selection(self, tmp_path):
        db = str(tmp_path / "s.db")
        assert isinstance(credentials_from_settings(Settings(session_db_path=db)),
                          SqliteSessionStore)
        assert isinstance(credentials_from_settings(Settings(shop_domain=SHOP)),
                          StaticCredentials)


class TestGraphql:
    def test_url_and_headers(self, admin):
        assert admin.url == GRAPHQL_URL
        assert admin.headers()["X-Shopify-Access-Token"] == "shpat_test_token"

    def test_http_error(self, admin, remote):
        remote.graphql_status = 502
        with pytest.raises(ShopifyError) as exc:
            admin.add_tags("gid://shopify/Order/1", ["x"])
        assert exc.value.status == 502

    def test_top_level_errors(self, admin, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse(
            200, {"errors": [{"message": "Throttled"}]}))
        with pytest.raises(ShopifyError) as exc:
            admin.get_order("gid://shopify/Order/1")
        assert exc.value.detail == [{"message": "Throttled"}]

    def test_transport_failure(self, admin, monkeypatch):
        def boom(*a, **k):
            raise requests.ConnectionError("connection refused")
        monkeypatch.setattr(requests, "post", boom)
        with pytest.raises(TransportFailure):
            admin.set_metafields([])

    def test_user_errors(self, admin, remote):
        remote.user_errors["tagsAdd"] = [{"field": ["id"], "message": "Order does not exist"}]
        with pytest.raises(ShopifyUserError) as exc:
            admin.add_tags("gid://shopify/Order/1", ["x"])
        assert "Order does not exist" in str(exc.value)


class TestRelayPhoto:
    def test_happy_path(self, admin, remote):
        up = relay_photo(admin, PHOTO, "photo_0.jpg", "image/jpeg", len(PHOTO), 0)
        assert up.url == remote.file_url
        assert up.sha256 == hashlib.sha256(PHOTO).hexdigest()
        assert up.index == 0
        assert [op for op, _ in remote.calls] == ["stagedUploadsCreate", "upload", "fileCreate"]

    def test_staged_request(self, admin, remote):
        relay_photo(admin, PHOTO, "photo_3.jpg", "image/png", len(PHOTO), 3)
        staged = remote.ops("stagedUploadsCreate")[0]["input"][0]
        assert staged == {
            "filename": "photo_3.jpg",
            "mimeType": "image/png",
            "resource": "IMAGE",
            "fileSize": str(len(PHOTO)),
            "httpMethod": "POST",
        }
        assert remote.ops("fileCreate")[0]["files"][0]["originalSource"] == (
            f"{STAGED_URL}tmp/77/photo_3.jpg"
        )

    def test_upload_keeps_parameter_order(self, admin, remote):
        relay_photo(admin, PHOTO, "photo_0.jpg", "image/jpeg", len(PHOTO), 0)
        sent = remote.ops("upload")[0]
        assert [name for name, _ in sent["data"]] == [
            "Content-Type", "success_action_status", "acl", "key",
        ]
        assert sent["data"][3] == ("key", "tmp/77/photo_0.jpg")
        assert sent["files"]["file"] == ("photo_0.jpg", PHOTO, "image/jpeg")

    def test_staged_target_failure(self, admin, remote):
        remote.user_errors["stagedUploadsCreate"] = [{"field": ["input"], "message": "too big"}]
        with pytest.raises(StagedUploadError):
            relay_photo(admin, PHOTO, "p.jpg", "image/jpeg", len(PHOTO), 0)
        assert remote.ops("upload") == []

    def test_upload_failure_stops_before_register(self, admin, remote):
        remote.upload_status = 403
        with pytest.raises(UploadError) as exc:
            relay_photo(admin, PHOTO, "p.jpg", "image/jpeg", len(PHOTO), 0)
        assert exc.value.status == 403
        assert str(exc.value) == "Upload to Shopify failed"
        assert remote.ops("fileCreate") == []

    def test_register_without_url(self, admin, remote):
        remote.file_url = None
        with pytest.raises(FileRegistrationError) as exc:
            relay_photo(admin, PHOTO, "p.jpg", "image/jpeg", len(PHOTO), 0)
        assert str(exc.value) == "Failed to register file"

    def test_register_user_errors(self, admin, remote):
        remote.user_errors["fileCreate"] = [{"field": ["files"], "message": "invalid"}]
        with pytest.raises(FileRegistrationError):
            relay_photo(admin, PHOTO, "p.jpg", "image/jpeg", len(PHOTO), 0)


class TestRegisterWebhooks:
    def test_all_topics(self, admin, remote):
        results = register_webhooks(admin, "https://ink-bridge.example.test/")
        assert [r["topic"] for r in results] == [
            "ORDERS_CREATE", "FULFILLMENTS_CREATE", "FULFILLMENTS_UPDATE",
        ]
        urls = [v["webhookSubscription"]["callbackUrl"]
                for v in remote.ops("webhookSubscriptionCreate")]
        assert urls == [
            "https://ink-bridge.example.test/webhooks/orders/create",
            "https://ink-bridge.example.test/webhooks/fulfillments",
            "https://ink-bridge.example.test/webhooks/fulfillments",
        ]

    def test_user_errors_reported(self, admin, remote):
        remote.user_errors["webhookSubscriptionCreate"] = [
            {"field": ["callbackUrl"], "message": "Address for this topic has already been taken"}
        ]
        results = register_webhooks(admin, "https://ink-bridge.example.test")
        assert all(r["userErrors"] for r in results)
        assert all(r["id"] is None for r in results)
