"""
Client for the NFS proof-of-delivery backend.

- POST /enroll         register a package (NFC, photos, GPS)
- GET  /retrieve/<id>  fetch a proof record, relayed verbatim

No retries here; callers own retry policy.
"""

import json
import logging
from typing import Any, List, Optional, Tuple

import requests
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from errors import MissingFieldError, NfsError, TransportFailure, UpstreamError

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30

# ---------------------------------------------------
# Models
# ---------------------------------------------------

class Gps(BaseModel):
    lat: float
    lng: float

    @model_validator(mode="after")
    def _in_range(self):
        if not (-90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0):
            raise ValueError(f"GPS out of range: {self.lat},{self.lng}")
        return self


class EnrollRequest(BaseModel):
    """
    Enrollment document sent to NFS.
    photo_urls[i] and photo_hashes[i] describe the same photo.
    """
    order_id: str
    nfc_uid: str
    nfc_token: str
    photo_urls: List[str]
    photo_hashes: List[str]
    shipping_address_gps: Gps
    customer_phone_last4: Optional[str] = None
    warehouse_gps: Optional[Gps] = None

    @field_validator("order_id", "nfc_uid", "nfc_token")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("customer_phone_last4")
    @classmethod
    def _last4(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) != 4 or not v.isdigit():
            raise ValueError("must be exactly 4 digits")
        return v

    @model_validator(mode="after")
    def _photos_match(self):
        if not self.photo_urls:
            raise ValueError("at least one photo is required")
        if len(self.photo_urls) != len(self.photo_hashes):
            raise ValueError(
                f"photo_urls ({len(self.photo_urls)}) and photo_hashes "
                f"({len(self.photo_hashes)}) must have the same length"
            )
        return self


class EnrollResponse(BaseModel):
    proof_id: str
    enrollment_status: str = ""
    key_id: str = ""

# ---------------------------------------------------
# Client
# ---------------------------------------------------

def error_detail(text: str) -> Any:
    """Upstream error body: parsed JSON when possible, raw text otherwise."""
    try:
        return json.loads(text)
    except ValueError:
        return text


class NfsClient:
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def enroll(self, req: EnrollRequest) -> EnrollResponse:
        """
        Submit an enrollment.
        Non-2xx -> NfsError carrying the upstream body (JSON if it parses).
        """
        url = f"{self.base_url}/enroll"
        body = req.model_dump(exclude_none=True)
        logger.info("NFS enroll: order=%s photos=%d", req.order_id, len(req.photo_urls))
        try:
            r = requests.post(url, json=body, timeout=HTTP_TIMEOUT)
        except requests.RequestException as e:
            raise TransportFailure("NFS backend", str(e)) from e

        if not r.ok:
            detail = error_detail(r.text)
            logger.error("NFS enroll failed [%s] url=%s order=%s: %s",
                         r.status_code, url, req.order_id, r.text[:500])
            raise NfsError("enroll", r.status_code, detail, r.text)

        try:
            res = EnrollResponse.model_validate(r.json())
        except (ValueError, ValidationError) as e:
            logger.error("NFS enroll [%s] order=%s: unreadable response: %s",
                         r.status_code, req.order_id, r.text[:500])
            raise UpstreamError("NFS enroll returned an unreadable response",
                                status=r.status_code, detail=r.text) from e
        logger.info("NFS enroll ok: order=%s proof_id=%s status=%s",
                    req.order_id, res.proof_id, res.enrollment_status)
        return res

    def retrieve(self, proof_id: str) -> Tuple[int, Any]:
        """
        Fetch a proof record. Returns (status, json body) on 2xx.
        Non-2xx -> NfsError with the upstream text.
        """
        proof_id = (proof_id or "").strip()
        if not proof_id:
            raise MissingFieldError("proof_id")
        url = f"{self.base_url}/retrieve/{proof_id}"
        logger.info("NFS retrieve: %s", url)
        try:
            r = requests.get(url, timeout=HTTP_TIMEOUT)
        except requests.RequestException as e:
            raise TransportFailure("NFS backend", str(e)) from e

        if not r.ok:
            logger.error("NFS retrieve failed [%s] proof=%s: %s",
                         r.status_code, proof_id, r.text[:500])
            raise NfsError("retrieve", r.status_code, error_detail(r.text), r.text)
        try:
            return r.status_code, r.json()
        except ValueError as e:
            raise UpstreamError("NFS retrieve returned an unreadable response",
                                status=r.status_code, detail=r.text) from e
