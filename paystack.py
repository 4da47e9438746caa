"""Paystack webhook helpers: signature check, event ids and safe logging."""
import copy
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from errors import WebhookRejected

SIGNATURE_HEADER = "x-paystack-signature"


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign(body, secret), signature)


def parse_event(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise WebhookRejected("Body is not valid JSON")
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        raise WebhookRejected("Missing event type")
    if not isinstance(payload.get("data") or {}, dict):
        raise WebhookRejected("Malformed data")
    return payload


def event_id_for(payload: Dict[str, Any]) -> str:
    """Stable idempotency key for a delivery.

    Paystack's own event id when present, otherwise event type plus
    transaction reference. A payload with neither cannot be deduplicated and
    is rejected.
    """
    if payload.get("id"):
        return f"paystack_{payload['id']}"
    data = payload.get("data") or {}
    reference = data.get("reference") or data.get("transaction_reference")
    if reference:
        return f"paystack_{payload['event']}_{reference}"
    raise WebhookRejected("Cannot derive an event id")


def metadata_of(data: Dict[str, Any]) -> Dict[str, Any]:
    """The `metadata` of an event as a dict.

    Paystack sends it either as an object or as a JSON-encoded string.
    """
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    return metadata if isinstance(metadata, dict) else {}


def sanitize(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the payload that is safe to log."""
    clean = copy.deepcopy(payload)
    data = clean.get("data")
    if not isinstance(data, dict):
        return clean
    if "authorization" in data:
        data["authorization"] = {"masked": True}
    customer = data.get("customer")
    if isinstance(customer, dict) and customer.get("email") and "@" in customer["email"]:
        local, domain = customer["email"].split("@", 1)
        customer["email"] = f"{local[:2]}***@{domain}"
    if "metadata" in data:
        metadata = metadata_of(data)
        metadata.pop("authorization", None)
        metadata.pop("customerPhone", None)
        data["metadata"] = metadata
    data.pop("ip_address", None)
    return clean
