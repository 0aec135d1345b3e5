"""
Shopify Admin API access: credentials, GraphQL calls and staged file uploads.

- Credentials come from a store: either one static token from .env or the
  offline session table the embedded app writes into SQLite.
- ShopifyAdmin wraps the GraphQL endpoint; every call is a single
  requests.post with a timeout, no retries.
- relay_photo() is the stage -> upload -> register -> hash sequence.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from errors import (
    ConfigurationError,
    FileRegistrationError,
    ShopifyError,
    ShopifyUserError,
    StagedUploadError,
    TransportFailure,
    UploadError,
)
from signatures import sha256_hex

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30

# ---------------------------------------------------
# 1) Credentials
# ---------------------------------------------------

@dataclass(frozen=True)
class ShopCredentials:
    shop: str
    access_token: str


class StaticCredentials:
    """One shop, one Admin API token (SHOPIFY_SHOP / SHOPIFY_ACCESS_TOKEN)."""

    def __init__(self, shop: str, access_token: str):
        self.shop = shop
        self.access_token = access_token

    def get(self, shop: Optional[str] = None) -> ShopCredentials:
        if not self.access_token:
            raise ConfigurationError("Missing configuration: SHOPIFY_ACCESS_TOKEN")
        target = shop or self.shop
        if not target:
            raise ConfigurationError("Missing configuration: SHOPIFY_SHOP")
        if shop and self.shop and shop != self.shop:
            raise ConfigurationError(f"No credentials for shop {shop}")
        return ShopCredentials(shop=target, access_token=self.access_token)


class SqliteSessionStore:
    """
    Offline sessions stored by the embedded admin app.
    Table layout:
        sessions(id TEXT PRIMARY KEY, shop TEXT, access_token TEXT, is_online INTEGER)
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def init(self):
        """Create the sessions table if it does not exist yet."""
        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()
        c.execute("""CREATE TABLE IF NOT EXISTS sessions(
            id TEXT PRIMARY KEY,
            shop TEXT NOT NULL,
            access_token TEXT NOT NULL,
            is_online INTEGER NOT NULL DEFAULT 0
        )""")
        conn.commit()
        conn.close()

    def save(self, shop: str, access_token: str):
        """Store or replace the offline session for a shop."""
        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()
        c.execute("""INSERT OR REPLACE INTO sessions(id, shop, access_token, is_online)
                     VALUES(?,?,?,0)""",
                  (f"offline_{shop}", shop, access_token))
        conn.commit()
        conn.close()

    def get(self, shop: Optional[str] = None) -> ShopCredentials:
        """
        Look up an offline session.
        - With a shop: that shop's offline session.
        - Without: the first offline session (single-shop installs).
        """
        conn = sqlite3.connect(self.db_path)
        c = conn.cursor()
        if shop:
            c.execute("""SELECT shop, access_token FROM sessions
                         WHERE is_online=0 AND shop=? LIMIT 1""", (shop,))
        else:
            c.execute("""SELECT shop, access_token FROM sessions
                         WHERE is_online=0 LIMIT 1""")
        row = c.fetchone()
        conn.close()
        if not row:
            raise ConfigurationError(f"No session available for {shop or 'any shop'}")
        return ShopCredentials(shop=row[0], access_token=row[1])


def credentials_from_settings(settings):
    """Pick the credential store: SQLite sessions if SESSION_DB_PATH is set."""
    if settings.session_db_path:
        return SqliteSessionStore(settings.session_db_path)
    return StaticCredentials(settings.shop_domain, settings.access_token)

# ---------------------------------------------------
# 2) GraphQL documents
# ---------------------------------------------------

ORDER_QUERY = """
query InkOrder($id: ID!) {
  order(id: $id) {
    id
    name
    tags
    shippingLine { title }
    customAttributes { key value }
    lineItems(first: 50) {
      edges { node { title product { title } } }
    }
  }
}
"""

RECENT_ORDERS_QUERY = """
query RecentOrders($first: Int!) {
  orders(first: $first, reverse: true) {
    edges {
      node {
        id
        name
        tags
        shippingLine { title }
        customAttributes { key value }
      }
    }
  }
}
"""

TAG_MUTATION = """
mutation AddOrderTag($id: ID!, $tags: [String!]!) {
  tagsAdd(id: $id, tags: $tags) {
    userErrors { field message }
  }
}
"""

METAFIELD_MUTATION = """
mutation SetInkMetafields($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { key value }
    userErrors { field message }
  }
}
"""

STAGED_UPLOAD_MUTATION = """
mutation StagedUploadsCreate($input: [StagedUploadInput!]!) {
  stagedUploadsCreate(input: $input) {
    stagedTargets {
      url
      resourceUrl
      parameters { name value }
    }
    userErrors { field message }
  }
}
"""

FILE_CREATE_MUTATION = """
mutation FileCreate($files: [FileCreateInput!]!) {
  fileCreate(files: $files) {
    files {
      id
      fileStatus
      ... on MediaImage { image { url } }
      ... on GenericFile { url }
    }
    userErrors { field message }
  }
}
"""

WEBHOOK_SUBSCRIPTION_MUTATION = """
mutation webhookSubscriptionCreate($topic: WebhookSubscriptionTopic!, $webhookSubscription: WebhookSubscriptionInput!) {
  webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
    webhookSubscription {
      id
      topic
      endpoint {
        __typename
        ... on WebhookHttpEndpoint { callbackUrl }
      }
    }
    userErrors { field message }
  }
}
"""

# ---------------------------------------------------
# 3) Admin GraphQL client
# ---------------------------------------------------

class ShopifyAdmin:
    """Minimal Admin GraphQL client bound to one shop."""

    def __init__(self, creds: ShopCredentials, api_version: str = "2024-10"):
        self.shop = creds.shop
        self.url = f"https://{creds.shop}/admin/api/{api_version}/graphql.json"
        self._token = creds.access_token

    def headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self._token,
            "Content-Type": "application/json",
        }

    def graphql(self, query: str, variables: Optional[dict] = None) -> dict:
        """
        POST a GraphQL document and return its `data`.
        - No response -> TransportFailure.
        - Non-2xx or top-level `errors` -> ShopifyError.
        userErrors are left to the caller (see mutate()).
        """
        try:
            r = requests.post(self.url, headers=self.headers(),
                              json={"query": query, "variables": variables or {}},
                              timeout=HTTP_TIMEOUT)
        except requests.RequestException as e:
            raise TransportFailure("Shopify Admin API", str(e)) from e

        if not r.ok:
            raise ShopifyError(f"Shopify Admin API error {r.status_code}",
                               status=r.status_code, detail=r.text[:300])
        try:
            body = r.json()
        except ValueError as e:
            raise ShopifyError("Shopify Admin API returned invalid JSON",
                               status=r.status_code, detail=r.text[:300]) from e
        if body.get("errors"):
            raise ShopifyError("Shopify Admin API query failed",
                               status=r.status_code, detail=body["errors"])
        return body.get("data") or {}

    def mutate(self, operation: str, query: str, variables: dict) -> dict:
        """Run a mutation and raise ShopifyUserError on non-empty userErrors."""
        data = self.graphql(query, variables)
        result = data.get(operation) or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise ShopifyUserError(operation, user_errors)
        return result

    # --- orders ---

    def get_order(self, order_gid: str) -> dict:
        data = self.graphql(ORDER_QUERY, {"id": order_gid})
        order = data.get("order")
        if order is None:
            raise ShopifyError(f"Order not found: {order_gid}", status=404)
        return order

    def recent_orders(self, first: int = 10) -> List[dict]:
        data = self.graphql(RECENT_ORDERS_QUERY, {"first": first})
        edges = ((data.get("orders") or {}).get("edges")) or []
        return [e["node"] for e in edges if e.get("node")]

    def add_tags(self, order_gid: str, tags: List[str]) -> dict:
        return self.mutate("tagsAdd", TAG_MUTATION, {"id": order_gid, "tags": tags})

    def set_metafields(self, metafields: List[dict]) -> dict:
        return self.mutate("metafieldsSet", METAFIELD_MUTATION, {"metafields": metafields})

    # --- files ---

    def staged_upload_target(self, filename: str, mime_type: str, file_size: int) -> dict:
        """Ask for a one-time upload URL plus the form parameters it requires."""
        try:
            result = self.mutate("stagedUploadsCreate", STAGED_UPLOAD_MUTATION, {
                "input": [{
                    "filename": filename,
                    "mimeType": mime_type,
                    "resource": "IMAGE",
                    "fileSize": str(file_size),
                    "httpMethod": "POST",
                }]
            })
        except ShopifyError as e:
            raise StagedUploadError(f"Staged upload failed: {e}",
                                    status=e.status, detail=e.detail) from e
        targets = result.get("stagedTargets") or []
        if not targets or not targets[0].get("url"):
            raise StagedUploadError("Staged upload failed: no target returned")
        return targets[0]

    def register_file(self, resource_url: str, alt: str = "") -> str:
        """Create a File from an uploaded resource and return its public URL."""
        try:
            result = self.mutate("fileCreate", FILE_CREATE_MUTATION, {
                "files": [{
                    "originalSource": resource_url,
                    "contentType": "IMAGE",
                    "alt": alt,
                }]
            })
        except ShopifyError as e:
            raise FileRegistrationError(detail=e.detail or str(e)) from e
        files = result.get("files") or []
        if not files:
            raise FileRegistrationError()
        f = files[0]
        url = f.get("url") or ((f.get("image") or {}).get("url"))
        if not url:
            raise FileRegistrationError(detail={"id": f.get("id"),
                                                "fileStatus": f.get("fileStatus")})
        return url

    # --- webhooks ---

    def create_webhook_subscription(self, topic: str, callback_url: str) -> dict:
        data = self.graphql(WEBHOOK_SUBSCRIPTION_MUTATION, {
            "topic": topic,
            "webhookSubscription": {"callbackUrl": callback_url, "format": "JSON"},
        })
        return data.get("webhookSubscriptionCreate") or {}

# ---------------------------------------------------
# 4) Staged photo upload
# ---------------------------------------------------

@dataclass(frozen=True)
class PhotoUpload:
    url: str
    sha256: str
    index: Optional[int]


def upload_to_target(target: dict, data: bytes, filename: str, mime_type: str):
    """
    Multipart POST of the file to the staged URL.
    Server-given parameters go first, untouched and in order; `file` last.
    """
    params: List[Tuple[str, Any]] = [(p["name"], p["value"])
                                     for p in (target.get("parameters") or [])]
    try:
        r = requests.post(target["url"], data=params,
                          files={"file": (filename, data, mime_type)},
                          timeout=HTTP_TIMEOUT)
    except requests.RequestException as e:
        raise UploadError(detail=str(e)) from e
    if not r.ok:
        raise UploadError(status=r.status_code, detail=r.text[:300])


def relay_photo(admin: ShopifyAdmin, data: bytes, filename: str, mime_type: str,
                file_size: int, photo_index: Optional[int] = None) -> PhotoUpload:
    """
    Stage, upload and register one photo, then hash the original bytes.
    Any failed stage aborts the rest; nothing is retried.
    """
    target = admin.staged_upload_target(filename, mime_type, file_size)
    upload_to_target(target, data, filename, mime_type)
    url = admin.register_file(target["resourceUrl"], alt=filename)
    digest = sha256_hex(data)
    logger.info("Photo %s registered (%d bytes, sha256=%s)", filename, len(data), digest)
    return PhotoUpload(url=url, sha256=digest, index=photo_index)

# ---------------------------------------------------
# 5) Webhook registration
# ---------------------------------------------------

WEBHOOK_ROUTES = (
    ("ORDERS_CREATE", "/webhooks/orders/create"),
    ("FULFILLMENTS_CREATE", "/webhooks/fulfillments"),
    ("FULFILLMENTS_UPDATE", "/webhooks/fulfillments"),
)


def register_webhooks(admin: ShopifyAdmin, base_url: str) -> List[dict]:
    """
    Subscribe the shop to every topic this service handles.
    userErrors are reported per topic rather than raised, so one topic that
    already exists does not hide the others.
    """
    results = []
    for topic, path in WEBHOOK_ROUTES:
        res = admin.create_webhook_subscription(topic, f"{base_url.rstrip('/')}{path}")
        errors = res.get("userErrors") or []
        sub = res.get("webhookSubscription") or {}
        if errors:
            logger.warning("Webhook %s registration errors: %s", topic, errors)
        else:
            logger.info("Webhook %s registered -> %s", topic, path)
        results.append({"topic": topic, "id": sub.get("id"), "userErrors": errors})
    return results
