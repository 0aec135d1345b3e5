"""
INK order rules: who bought premium protection, and what we write back.

Classification (one canonical rule):
    * `_ink_delivery_type` attribute, when present, decides on its own
      (value "premium" => protected).
    * Otherwise a shipping line title containing "ink premium", "ink delivery",
      or both "premium delivery" and "ink" (case-insensitive).

Write-back:
    * tag INK-Premium-Delivery (added once),
    * `ink.*` metafields, last write wins per key.

The verification_status field follows whichever webhook topic fired; there is
no ordering guard, a late fulfillments/create simply overwrites.
"""

import json
import logging
from typing import Iterable, List, Optional

from errors import InkError
from shopify_admin import ShopifyAdmin

logger = logging.getLogger(__name__)

INK_TAG = "INK-Premium-Delivery"
METAFIELD_NAMESPACE = "ink"
METAFIELD_TYPE = "single_line_text_field"

DELIVERY_TYPE_KEY = "_ink_delivery_type"
PREMIUM = "premium"

STATUS_PENDING = "pending"
STATUS_FULFILLMENT_CREATED = "fulfillment_created"
STATUS_IN_FULFILLMENT = "in_fulfillment"

TOPIC_STATUS = {
    "orders/create": STATUS_PENDING,
    "fulfillments/create": STATUS_FULFILLMENT_CREATED,
    "fulfillments/update": STATUS_IN_FULFILLMENT,
}

# ---------------------------------------------------
# 1) Classification
# ---------------------------------------------------

def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def delivery_type_attribute(payload: dict) -> Optional[str]:
    """
    Find the `_ink_delivery_type` attribute value, or None if absent.
    REST payloads carry note_attributes [{name, value}]; GraphQL carries
    customAttributes [{key, value}]. Both shapes are accepted.
    """
    if not isinstance(payload, dict):
        return None
    for field in ("custom_attributes", "customAttributes", "note_attributes"):
        for attr in _as_list(payload.get(field)):
            if not isinstance(attr, dict):
                continue
            key = attr.get("key") if "key" in attr else attr.get("name")
            if key == DELIVERY_TYPE_KEY:
                return str(attr.get("value") or "")
    return None


def is_ink_shipping_title(title: str) -> bool:
    t = (title or "").lower()
    return (
        "ink premium" in t
        or "ink delivery" in t
        or ("premium delivery" in t and "ink" in t)
    )


def has_ink_shipping(shipping_lines: Iterable) -> bool:
    """True if any shipping line looks like INK Premium Delivery."""
    for line in shipping_lines or []:
        if not isinstance(line, dict):
            continue
        if is_ink_shipping_title(line.get("title") or line.get("name") or ""):
            return True
    return False


def _shipping_lines(payload: dict) -> list:
    lines = _as_list(payload.get("shipping_lines"))
    # GraphQL order nodes expose a single shippingLine object
    single = payload.get("shippingLine")
    if isinstance(single, dict):
        lines = lines + [single]
    return lines


def is_premium_order(payload: dict) -> bool:
    """Decide whether an order payload carries INK premium protection."""
    if not isinstance(payload, dict):
        return False
    flag = delivery_type_attribute(payload)
    if flag is not None:
        return flag.strip().lower() == PREMIUM
    return has_ink_shipping(_shipping_lines(payload))


def status_for_topic(topic: str) -> str:
    """
    Map a webhook topic to verification_status.
    fulfillments/* topics that are not listed fall back on "update" in the name.
    """
    t = (topic or "").strip().lower()
    if t in TOPIC_STATUS:
        return TOPIC_STATUS[t]
    if t.startswith("fulfillments/"):
        return STATUS_IN_FULFILLMENT if "update" in t else STATUS_FULFILLMENT_CREATED
    raise ValueError(f"Unhandled webhook topic: {topic}")


def order_gid(payload: dict) -> Optional[str]:
    """
    Resolve the order GID from an order or fulfillment payload.
    Prefers admin_graphql_api_id; builds gid://shopify/Order/<id> from order_id.
    """
    if not isinstance(payload, dict):
        return None
    order = payload.get("order")
    if isinstance(order, dict) and order.get("admin_graphql_api_id"):
        return order["admin_graphql_api_id"]
    gid = payload.get("admin_graphql_api_id")
    if gid and "/Order/" in gid:
        return gid
    if payload.get("order_id"):
        return f"gid://shopify/Order/{payload['order_id']}"
    return None


def to_order_gid(order_id: str) -> str:
    """Accept either a GID or a numeric order id."""
    order_id = str(order_id).strip()
    if order_id.startswith("gid://"):
        return order_id
    return f"gid://shopify/Order/{order_id.lstrip('#')}"

# ---------------------------------------------------
# 2) Metafields and tags
# ---------------------------------------------------

def ink_metafields(owner_id: str, **values: str) -> List[dict]:
    """Build MetafieldsSetInput entries in the ink namespace."""
    return [
        {
            "ownerId": owner_id,
            "namespace": METAFIELD_NAMESPACE,
            "key": key,
            "type": METAFIELD_TYPE,
            "value": "" if value is None else str(value),
        }
        for key, value in values.items()
    ]


def _tag_list(tags) -> List[str]:
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    return [str(t) for t in _as_list(tags)]


class OrderAnnotator:
    """Writes INK tag and metafields onto orders through the Admin API."""

    def __init__(self, admin: ShopifyAdmin):
        self.admin = admin

    def ensure_tag(self, gid: str, current_tags=None) -> bool:
        """
        Add INK_TAG unless already there. Returns True if a write was made.
        current_tags saves the order query when the caller already has them.
        """
        if current_tags is None:
            current_tags = self.admin.get_order(gid).get("tags")
        if INK_TAG in _tag_list(current_tags):
            return False
        self.admin.add_tags(gid, [INK_TAG])
        return True

    def mark_premium(self, gid: str, current_tags=None) -> None:
        """
        Tag the order and set the initial premium metafields.
        The metafield write is sent even when tagging fails; the tag
        failure is raised afterwards. Nothing is rolled back.
        """
        tag_error = None
        try:
            tagged = self.ensure_tag(gid, current_tags)
        except InkError as e:
            logger.error("Order %s: tagging failed, still writing metafields: %s", gid, e)
            tag_error = e
            tagged = False
        self.admin.set_metafields(ink_metafields(
            gid,
            verification_status=STATUS_PENDING,
            delivery_type=PREMIUM,
        ))
        if tag_error is not None:
            raise tag_error
        logger.info("Order %s marked premium (tag %s)", gid,
                    "added" if tagged else "already present")

    def set_status(self, gid: str, status: str) -> None:
        self.admin.set_metafields(ink_metafields(gid, verification_status=status))
        logger.info("Order %s verification_status=%s", gid, status)

    def record_enrollment(self, gid: str, proof_id: str,
                          nfc_uid: Optional[str] = None,
                          photo_hashes: Optional[List[str]] = None) -> None:
        """Store the NFS proof reference (and NFC/photo data when given)."""
        values = {"proof_reference": proof_id}
        if nfc_uid is not None:
            values["nfc_uid"] = nfc_uid
        if photo_hashes is not None:
            values["photos_hashes"] = json.dumps(list(photo_hashes))
        self.admin.set_metafields(ink_metafields(gid, **values))
        logger.info("Order %s proof_reference=%s", gid, proof_id)

# ---------------------------------------------------
# 3) Backfill of recent orders
# ---------------------------------------------------

def fix_recent_orders(admin: ShopifyAdmin, first: int = 10) -> List[dict]:
    """
    Check the latest orders and tag any INK premium order the webhook missed.
    Returns one report row per order.
    """
    annotator = OrderAnnotator(admin)
    results = []
    for order in admin.recent_orders(first):
        shipping = ((order.get("shippingLine") or {}).get("title")) or ""
        premium = is_premium_order(order)
        has_tag = INK_TAG in _tag_list(order.get("tags"))
        needs_tag = premium and not has_tag
        results.append({
            "order": order.get("name"),
            "shipping": shipping,
            "hasInkShipping": premium,
            "hasTag": has_tag,
            "needsTag": needs_tag,
        })
        if needs_tag:
            logger.info("Backfill: tagging %s", order.get("name"))
            annotator.mark_premium(order["id"], current_tags=order.get("tags"))
    return results

# ---------------------------------------------------
# 4) Checkout: auto-add the protection line
# ---------------------------------------------------

def _merchandise_id(line) -> Optional[str]:
    if not isinstance(line, dict):
        return None
    merch = line.get("merchandise")
    if isinstance(merch, dict):
        return merch.get("id")
    return line.get("merchandiseId")


def protection_cart_change(cart_lines: Iterable, variant_id: str) -> Optional[dict]:
    """
    Cart change to apply at checkout, or None.
    Adds one protection line when the cart has real products and no
    protection line yet.
    """
    if not variant_id:
        return None
    ids = [_merchandise_id(line) for line in cart_lines or []]
    has_products = any(i and i != variant_id for i in ids)
    has_protection = variant_id in ids
    if has_products and not has_protection:
        return {"type": "addCartLine", "merchandiseId": variant_id, "quantity": 1}
    return None
