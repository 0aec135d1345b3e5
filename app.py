"""
INK proof-of-delivery bridge for Shopify.

Core responsibilities:
- Receive Shopify webhooks (orders/create, fulfillments/create, fulfillments/update).
- Detect INK Premium Delivery orders and write back:
    * tag INK-Premium-Delivery,
    * ink.* metafields (verification_status, delivery_type, ...).
- Relay photo uploads into Shopify Files (staged upload) and hash them.
- Proxy proof retrieval to the NFS verification backend.
- Enroll packages with NFS and record the proof reference on the order.
- Tell the checkout extension when to add the INK protection line.
- Security:
    * All secrets in .env, not in code.
    * Webhooks protected by HMAC (Shopify base64, NFS hex).
    * Internal endpoints protected by INTERNAL_API_KEY header.
    * A missing secret disables the route (fail closed).
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings
from errors import (
    ConfigurationError,
    FileRegistrationError,
    InkError,
    MissingFieldError,
    NfsError,
    ShopifyUserError,
    SignatureError,
    StagedUploadError,
    TransportFailure,
    UploadError,
    UpstreamError,
)
from nfs import EnrollRequest, NfsClient
from orders import (
    OrderAnnotator,
    fix_recent_orders,
    is_premium_order,
    order_gid,
    protection_cart_change,
    status_for_topic,
    to_order_gid,
)
from shopify_admin import (
    ShopifyAdmin,
    credentials_from_settings,
    register_webhooks,
    relay_photo,
)
from signatures import authenticate

logger = logging.getLogger(__name__)

# ---------------------------------------------------
# 1) CORS for browser-facing routes
# ---------------------------------------------------

UPLOAD_CORS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

RETRIEVE_CORS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Accept, X-Requested-With, Origin",
}


class CartLines(BaseModel):
    lines: List[dict] = []


def api_error(message: str, status_code: int, headers: Optional[dict] = None, **extra) -> JSONResponse:
    """JSON error envelope {error, ...} with CORS headers."""
    return JSONResponse({"error": message, **extra}, status_code=status_code,
                        headers=headers or UPLOAD_CORS)


def _write_failure(tag: str, e: InkError) -> PlainTextResponse:
    """Map an order write-back failure to the webhook's plain-text answer."""
    if isinstance(e, ConfigurationError):
        logger.error("[%s] Configuration error: %s", tag, e)
        return PlainTextResponse("Configuration error", status_code=500)
    if isinstance(e, ShopifyUserError):
        logger.error("[%s] %s errors: %s", tag, e.operation, e.user_errors)
        label = "Tag error" if e.operation == "tagsAdd" else "Metafield error"
        return PlainTextResponse(label, status_code=500)
    logger.error("[%s] Error processing order: %s", tag, e)
    return PlainTextResponse("Error processing order", status_code=500)


async def _authenticated_json(request: Request, signature: Optional[str], secret: str,
                              source: str, encoding: str, tag: str):
    """
    Verify the raw body before anything else, then parse it.
    Returns (payload, None) or (None, error response).
    """
    body = await request.body()
    try:
        authenticate(body, signature or "", secret, source=source, encoding=encoding)
    except SignatureError:
        logger.error("[%s] Invalid HMAC signature", tag)
        return None, PlainTextResponse("Unauthorized", status_code=401)
    try:
        payload = json.loads(body)
    except ValueError:
        logger.error("[%s] Body is not JSON", tag)
        return None, PlainTextResponse("Invalid payload", status_code=400)
    if not isinstance(payload, dict):
        return None, PlainTextResponse("Invalid payload", status_code=400)
    return payload, None

# ---------------------------------------------------
# 2) App factory
# ---------------------------------------------------

def create_app(settings: Optional[Settings] = None, credentials=None) -> FastAPI:
    """
    Build the FastAPI app around an explicit Settings value.
    credentials: anything with get(shop) -> ShopCredentials; defaults to the
    store selected by Settings (SQLite sessions or one static token).
    """
    settings = settings or Settings.from_env()
    credentials = credentials or credentials_from_settings(settings)

    def admin_for(shop: Optional[str] = None) -> ShopifyAdmin:
        return ShopifyAdmin(credentials.get(shop), settings.api_version)

    def backfill_job():
        """Scheduled sweep: tag recent INK orders the webhook may have missed."""
        try:
            results = fix_recent_orders(admin_for())
            fixed = [r["order"] for r in results if r["needsTag"]]
            logger.info("Backfill checked %d orders, tagged %d", len(results), len(fixed))
        except InkError as e:
            logger.error("Backfill failed: %s: %s", type(e).__name__, e)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup and shutdown hook for background jobs.
        The scheduler only runs when BACKFILL_INTERVAL_MINUTES > 0.
        """
        sched = None
        if settings.backfill_interval_minutes > 0:
            sched = BackgroundScheduler()
            logger.info("Scheduling backfill every %s minutes",
                        settings.backfill_interval_minutes)
            sched.add_job(
                backfill_job,
                "interval",
                minutes=settings.backfill_interval_minutes,
                max_instances=1,
                coalesce=True,
            )
            sched.start()
        try:
            yield
        finally:
            if sched is not None:
                sched.shutdown(wait=False)

    # Disable automatic docs in production for less attack surface
    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.settings = settings
    app.state.credentials = credentials
    app.state.backfill_job = backfill_job

    async def check_internal_auth(x_internal_key: Optional[str] = Header(None)):
        """
        Dependency that enforces INTERNAL_API_KEY header on sensitive routes.
        Any request without the correct key gets HTTP 401.
        """
        key = settings.internal_api_key
        if not key or not hmac.compare_digest((x_internal_key or "").encode(), key.encode()):
            raise HTTPException(status_code=401, detail="Unauthorized")
        return True

    @app.exception_handler(RequestValidationError)
    async def validation_failed(request: Request, exc: RequestValidationError):
        """Validation failures are 400 with the standard error envelope."""
        return JSONResponse(
            {"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
            status_code=400,
            headers=UPLOAD_CORS if request.url.path.startswith("/api/") else None,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_failed(request: Request, exc: StarletteHTTPException):
        """/api/* answers {error} with CORS; everything else keeps FastAPI's {detail}."""
        if request.url.path.startswith("/api/"):
            return api_error(str(exc.detail), exc.status_code)
        return await http_exception_handler(request, exc)

    @app.get("/health")
    def health():
        """Simple health endpoint (can be left public for uptime checks)."""
        return {"ok": True}

    # ---------------------------------------------------
    # 3) Shopify webhooks
    # ---------------------------------------------------

    @app.post("/webhooks/orders/create")
    async def wh_orders_create(request: Request,
                               x_shopify_hmac_sha256: Optional[str] = Header(None),
                               x_shopify_shop_domain: Optional[str] = Header(None)):
        """
        orders/create:
        - Verifies HMAC on the raw body.
        - Standard delivery -> nothing written.
        - INK premium -> tag + pending metafields.
        """
        tag = "orders/create"
        payload, failed = await _authenticated_json(
            request, x_shopify_hmac_sha256, settings.webhook_secret,
            "Shopify", "base64", tag)
        if failed is not None:
            return failed

        gid = payload.get("admin_graphql_api_id")
        name = payload.get("name") or payload.get("order_number") or "Unknown"
        if not gid:
            logger.error("[%s] Missing order id", tag)
            return PlainTextResponse("Missing order", status_code=400)

        if not is_premium_order(payload):
            logger.info("[%s] Order %s has Standard Delivery - skipping INK protection",
                        tag, name)
            return PlainTextResponse("ok - standard delivery")

        logger.info("[%s] Order %s has INK Premium Delivery (%s)", tag, name,
                    x_shopify_shop_domain)
        try:
            annotator = OrderAnnotator(admin_for(x_shopify_shop_domain))
            annotator.mark_premium(gid, current_tags=payload.get("tags"))
        except InkError as e:
            return _write_failure(tag, e)

        logger.info("[%s] Processed premium delivery order %s", tag, name)
        return PlainTextResponse("ok")

    @app.post("/webhooks/fulfillments")
    async def wh_fulfillments(request: Request,
                              x_shopify_hmac_sha256: Optional[str] = Header(None),
                              x_shopify_shop_domain: Optional[str] = Header(None),
                              x_shopify_topic: Optional[str] = Header(None)):
        """
        fulfillments/create and fulfillments/update.
        Writes verification_status for the topic, unconditionally.
        """
        tag = x_shopify_topic or "fulfillments/*"
        payload, failed = await _authenticated_json(
            request, x_shopify_hmac_sha256, settings.webhook_secret,
            "Shopify", "base64", tag)
        if failed is not None:
            return failed

        # orders/create has its own route, it must be classified first
        topic = (x_shopify_topic or "").strip().lower()
        if not topic.startswith("fulfillments/"):
            logger.error("[%s] Unhandled topic", tag)
            return PlainTextResponse("Unknown topic", status_code=400)
        status = status_for_topic(topic)

        gid = order_gid(payload)
        if not gid:
            logger.error("[%s] Missing order id (shop %s)", tag, x_shopify_shop_domain)
            return PlainTextResponse("Missing order", status_code=400)

        try:
            OrderAnnotator(admin_for(x_shopify_shop_domain)).set_status(gid, status)
        except InkError as e:
            return _write_failure(tag, e)

        logger.info("[%s] Metafields updated for %s -> %s", tag, x_shopify_shop_domain, gid)
        return PlainTextResponse("ok")

    @app.post("/webhooks/nfs")
    async def wh_nfs(request: Request, x_nfs_signature: Optional[str] = Header(None)):
        """
        NFS enrollment callback (hex HMAC).
        Records proof_reference (and nfc_uid when sent) on the order.
        """
        tag = "nfs/enrolled"
        payload, failed = await _authenticated_json(
            request, x_nfs_signature, settings.nfs_hmac_secret, "NFS", "hex", tag)
        if failed is not None:
            return failed

        order_id = payload.get("order_id")
        proof_id = payload.get("proof_id")
        if not order_id or not proof_id:
            return PlainTextResponse("Missing order or proof", status_code=400)

        try:
            OrderAnnotator(admin_for()).record_enrollment(
                to_order_gid(order_id), str(proof_id), payload.get("nfc_uid"))
        except InkError as e:
            return _write_failure(tag, e)
        return PlainTextResponse("ok")

    # ---------------------------------------------------
    # 4) Photo upload relay
    # ---------------------------------------------------

    @app.options("/api/photos/upload")
    def photos_preflight():
        return Response(status_code=204, headers=UPLOAD_CORS)

    @app.post("/api/photos/upload")
    async def photos_upload(request: Request):
        """
        multipart: orderId, photo, photoIndex
        -> {success, photoUrl, photoHash, photoIndex}
        """
        form = await request.form()
        order_id = form.get("orderId")
        photo = form.get("photo")
        photo_index = form.get("photoIndex")

        if not order_id or not isinstance(photo, UploadFile):
            return api_error("Missing photo or orderId", 400)

        try:
            index = int(photo_index) if photo_index not in (None, "") else None
        except (TypeError, ValueError):
            return api_error("Invalid photoIndex", 400)

        try:
            data = await photo.read()
            upload = relay_photo(
                admin_for(),
                data,
                filename=photo.filename or f"photo_{photo_index}.jpg",
                mime_type=photo.content_type or "image/jpeg",
                file_size=len(data),
                photo_index=index,
            )
        except UploadError as e:
            if e.status is None:
                logger.error("Photo upload for %s: staged upload unreachable: %s",
                             order_id, e.detail)
                return api_error(str(e), 500)
            logger.error("Photo upload for %s: staged upload returned %s", order_id, e.status)
            return api_error(str(e), 500, status=e.status)
        except (StagedUploadError, FileRegistrationError) as e:
            logger.error("Photo upload for %s: %s (%s)", order_id, e, e.detail)
            return api_error(str(e), 500)
        except ConfigurationError as e:
            logger.error("Photo upload for %s: %s", order_id, e)
            return api_error("No session available", 500)
        except Exception as e:
            logger.exception("Photo upload error for %s", order_id)
            return api_error(str(e) or "Upload failed", 500)

        return JSONResponse({
            "success": True,
            "photoUrl": upload.url,
            "photoHash": upload.sha256,
            "photoIndex": upload.index,
        }, headers=UPLOAD_CORS)

    # ---------------------------------------------------
    # 5) Proof retrieval proxy
    # ---------------------------------------------------

    @app.options("/api/retrieve/{proof_id}")
    def retrieve_preflight(proof_id: str):
        return Response(status_code=204, headers=RETRIEVE_CORS)

    @app.get("/api/retrieve")
    @app.get("/api/retrieve/")
    def retrieve_missing():
        return api_error("Missing proof_id", 400, RETRIEVE_CORS)

    @app.get("/api/retrieve/{proof_id}")
    def retrieve(proof_id: str):
        """Relay NFS /retrieve/<id>: status and JSON body as-is."""
        if not proof_id.strip():
            return api_error("Missing proof_id", 400, RETRIEVE_CORS)
        try:
            settings.require("nfs_api_url")
            status, body = NfsClient(settings.nfs_api_url).retrieve(proof_id)
        except MissingFieldError:
            return api_error("Missing proof_id", 400, RETRIEVE_CORS)
        except NfsError as e:
            return api_error(f"Retrieve service error: {e.text}", e.status, RETRIEVE_CORS)
        except (TransportFailure, UpstreamError) as e:
            logger.error("Retrieve %s: %s", proof_id, e)
            return api_error(str(e), 500, RETRIEVE_CORS)
        except ConfigurationError as e:
            logger.error("Retrieve %s: %s", proof_id, e)
            return api_error("Retrieve service not configured", 500, RETRIEVE_CORS)
        except Exception as e:
            logger.exception("Retrieve error for %s", proof_id)
            return api_error(str(e) or "Retrieve failed", 500, RETRIEVE_CORS)

        logger.info("Retrieve %s: upstream %s", proof_id, status)
        return JSONResponse(body, status_code=status, headers=RETRIEVE_CORS)

    # ---------------------------------------------------
    # 6) Checkout protection line
    # ---------------------------------------------------

    @app.options("/api/checkout/protection")
    def checkout_preflight():
        return Response(status_code=204, headers=UPLOAD_CORS)

    @app.post("/api/checkout/protection")
    def checkout_protection(cart: CartLines):
        """Tell the checkout extension whether to add the INK protection line."""
        if not settings.protection_variant_id:
            return api_error("Protection variant not configured", 500)
        change = protection_cart_change(cart.lines, settings.protection_variant_id)
        return JSONResponse({"change": change}, headers=UPLOAD_CORS)

    # ---------------------------------------------------
    # 7) Enrollment and admin tools (internal-only)
    # ---------------------------------------------------

    @app.post("/api/enroll")
    def enroll(req: EnrollRequest, _=Depends(check_internal_auth)):
        """
        Submit an enrollment to NFS, then store the proof reference,
        NFC UID and photo hashes on the order.
        """
        try:
            settings.require("nfs_api_url")
            res = NfsClient(settings.nfs_api_url).enroll(req)
        except ConfigurationError as e:
            logger.error("Enroll %s: %s", req.order_id, e)
            return api_error(str(e), 500)
        except NfsError as e:
            return api_error(str(e), e.status, detail=e.detail)
        except (TransportFailure, UpstreamError) as e:
            logger.error("Enroll %s: %s", req.order_id, e)
            return api_error(str(e), 500)
        except Exception as e:
            logger.exception("Enroll error for %s", req.order_id)
            return api_error(str(e) or "Enrollment failed", 500)

        out = res.model_dump()
        try:
            OrderAnnotator(admin_for()).record_enrollment(
                to_order_gid(req.order_id), res.proof_id, req.nfc_uid, req.photo_hashes)
        except InkError as e:
            # NFS already holds the enrollment; report the partial write
            logger.error("Enrollment %s stored in NFS but not on order %s: %s",
                         res.proof_id, req.order_id, e)
            return api_error(f"Metafield write failed: {e}", 500, **out)
        return JSONResponse(out, headers=UPLOAD_CORS)

    @app.post("/admin/fix-orders")
    def fix_orders(first: int = 10, _=Depends(check_internal_auth)):
        """Check the latest orders and tag INK premium ones that lack the tag."""
        try:
            results = fix_recent_orders(admin_for(), first=first)
        except InkError as e:
            logger.error("fix-orders failed: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return {"results": results}

    @app.post("/admin/register-webhooks")
    def register(_=Depends(check_internal_auth)):
        """Subscribe the shop to orders/create and fulfillments/* webhooks."""
        try:
            settings.require("app_url")
            results = register_webhooks(admin_for(), settings.app_url)
        except InkError as e:
            logger.error("Webhook registration failed: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return {"results": results}

    return app


app = create_app()
