"""Pytest fixtures for the INK bridge tests."""

import base64
import hashlib
import hmac
import json

import pytest
import requests
from fastapi.testclient import TestClient

from config import Settings

WEBHOOK_SECRET = "shopify-test-secret"
NFS_SECRET = "nfs-test-secret"
INTERNAL_KEY = "internal-test-key"
SHOP = "ink-test.myshopify.com"
NFS_URL = "https://nfs.example.test/api"
GRAPHQL_URL = f"https://{SHOP}/admin/api/2024-10/graphql.json"
STAGED_URL = "https://shopify-staged-uploads.storage.googleapis.com/"
ORDER_GID = "gid://shopify/Order/5512345678"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Compute a valid Shopify signature."""
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def sign_hex(body: bytes, secret: str = NFS_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeRemote:
    """
    Stands in for Shopify (GraphQL + staged upload bucket) and the NFS backend.
    Mutations update in-memory tags/metafields the way Shopify would, so
    idempotence can be checked on the final state.
    """

    MUTATIONS = ("tagsAdd", "metafieldsSet", "stagedUploadsCreate", "fileCreate",
                 "webhookSubscriptionCreate")

    def __init__(self):
        self.calls = []
        self.tags = {}
        self.metafields = {}
        self.orders = []
        self.user_errors = {}
        self.graphql_status = 200
        self.upload_status = 201
        self.file_url = "https://cdn.shopify.com/s/files/1/0001/photo_0.jpg"
        self.routes = {}

    # --- requests entry points ---

    def post(self, url, headers=None, json=None, data=None, files=None, timeout=None):
        if ("POST", url) in self.routes:
            self.calls.append(("nfs_post", json))
            return self._route("POST", url)
        if url == STAGED_URL:
            self.calls.append(("upload", {"data": data, "files": files}))
            if 200 <= self.upload_status < 300:
                return FakeResponse(self.upload_status, text="")
            return FakeResponse(self.upload_status, text="<Error>AccessDenied</Error>")
        if url.endswith("/graphql.json"):
            return self._graphql(url, headers, json)
        raise AssertionError(f"unexpected POST {url}")

    def get(self, url, headers=None, timeout=None, **kwargs):
        if ("GET", url) in self.routes:
            self.calls.append(("nfs_get", url))
            return self._route("GET", url)
        raise AssertionError(f"unexpected GET {url}")

    def _route(self, method, url):
        res = self.routes[(method, url)]
        if isinstance(res, Exception):
            raise res
        return res

    # --- GraphQL ---

    def ops(self, name):
        return [v for op, v in self.calls if op == name]

    def _graphql(self, url, headers, body):
        query = body["query"]
        variables = body.get("variables") or {}
        if self.graphql_status != 200:
            self.calls.append(("graphql_error", variables))
            return FakeResponse(self.graphql_status, text="Internal Server Error")
        for op in self.MUTATIONS:
            if op + "(" in query:
                self.calls.append((op, variables))
                return FakeResponse(200, {"data": {op: self._mutation(op, variables)}})
        if "orders(" in query:
            self.calls.append(("orders", variables))
            edges = [{"node": o} for o in self.orders]
            return FakeResponse(200, {"data": {"orders": {"edges": edges}}})
        if "order(" in query:
            self.calls.append(("order", variables))
            gid = variables["id"]
            return FakeResponse(200, {"data": {"order": {
                "id": gid, "name": "#1001", "tags": list(self.tags.get(gid, [])),
            }}})
        raise AssertionError(f"unexpected query {query}")

    def _mutation(self, op, v):
        errors = self.user_errors.get(op, [])
        if op == "tagsAdd":
            if not errors:
                current = self.tags.setdefault(v["id"], [])
                for t in v["tags"]:
                    if t not in current:
                        current.append(t)
            return {"node": {"id": v["id"]}, "userErrors": errors}
        if op == "metafieldsSet":
            if not errors:
                for m in v["metafields"]:
                    self.metafields[(m["ownerId"], m["namespace"], m["key"])] = m["value"]
            return {"metafields": [{"key": m["key"], "value": m["value"]}
                                   for m in v["metafields"]], "userErrors": errors}
        if op == "stagedUploadsCreate":
            if errors:
                return {"stagedTargets": [], "userErrors": errors}
            name = v["input"][0]["filename"]
            return {"stagedTargets": [{
                "url": STAGED_URL,
                "resourceUrl": f"{STAGED_URL}tmp/77/{name}",
                "parameters": [
                    {"name": "Content-Type", "value": v["input"][0]["mimeType"]},
                    {"name": "success_action_status", "value": "201"},
                    {"name": "acl", "value": "private"},
                    {"name": "key", "value": f"tmp/77/{name}"},
                ],
            }], "userErrors": []}
        if op == "fileCreate":
            image = {"url": self.file_url} if self.file_url else None
            return {"files": [] if errors else [{
                "id": "gid://shopify/MediaImage/31", "fileStatus": "UPLOADED", "image": image,
            }], "userErrors": errors}
        if op == "webhookSubscriptionCreate":
            n = len(self.ops(op))
            return {"webhookSubscription": None if errors else {
                "id": f"gid://shopify/WebhookSubscription/{n}", "topic": v["topic"],
            }, "userErrors": errors}
        raise AssertionError(op)

    def ink(self, gid=ORDER_GID):
        """ink.* metafields currently stored for an order."""
        return {key: value for (owner, ns, key), value in self.metafields.items()
                if owner == gid and ns == "ink"}


@pytest.fixture
def settings():
    return Settings(
        webhook_secret=WEBHOOK_SECRET,
        shop_domain=SHOP,
        access_token="shpat_test_token",
        nfs_api_url=NFS_URL,
        nfs_hmac_secret=NFS_SECRET,
        internal_api_key=INTERNAL_KEY,
        app_url="https://ink-bridge.example.test",
        protection_variant_id="gid://shopify/ProductVariant/46259612164330",
    )


@pytest.fixture
def remote(monkeypatch):
    fake = FakeRemote()
    monkeypatch.setattr(requests, "post", fake.post)
    monkeypatch.setattr(requests, "get", fake.get)
    return fake


@pytest.fixture
def admin(remote):
    from shopify_admin import ShopCredentials, ShopifyAdmin

    return ShopifyAdmin(ShopCredentials(shop=SHOP, access_token="shpat_test_token"))


@pytest.fixture
def client(settings, remote):
    from app import create_app

    return TestClient(create_app(settings))
