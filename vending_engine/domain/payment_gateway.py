"""
Payment gateway rules.

Status vocabulary, webhook signature check and payment link generation for
a Midtrans-style QRIS gateway.
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
from typing import Any

from vending_engine.core.exceptions import InvalidSignatureError, ValidationError
from vending_engine.core.value_objects import PaymentStatus
from vending_engine.infrastructure.settings import WEBHOOK_STATUS_MAP


def map_transaction_status(transaction_status: str) -> PaymentStatus:
    """
    Map a gateway `transaction_status` to a payment status.

    Unrecognized values are treated as still pending.
    """
    mapped = WEBHOOK_STATUS_MAP.get(transaction_status.strip().lower())
    return PaymentStatus(mapped) if mapped else PaymentStatus.PENDING


def compute_signature(
    order_id: str,
    status_code: str,
    gross_amount: str,
    server_key: str,
) -> str:
    """SHA-512 hex digest over the concatenated webhook fields and server key."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_signature(payload: dict[str, Any], server_key: str) -> None:
    """
    Check the `signature_key` embedded in a webhook payload.

    Args:
        payload: Raw webhook body.
        server_key: Gateway server key shared with the merchant.

    Raises:
        InvalidSignatureError: If the signature is missing or does not match.
    """
    provided = payload.get("signature_key")
    if not provided:
        raise InvalidSignatureError(
            "Webhook signature missing",
            details={"order_id": payload.get("order_id")},
        )

    expected = compute_signature(
        str(payload.get("order_id", "")),
        str(payload.get("status_code", "")),
        str(payload.get("gross_amount", "")),
        server_key,
    )
    if not hmac.compare_digest(expected, str(provided)):
        raise InvalidSignatureError(
            "Webhook signature mismatch",
            details={"order_id": payload.get("order_id")},
        )


def require_fields(payload: dict[str, Any], *names: str) -> None:
    """
    Raises:
        ValidationError: If any of `names` is missing or empty.
    """
    missing = [name for name in names if not payload.get(name)]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )


def new_payment_link(url_base: str) -> tuple[str, str]:
    """Create a (payment_url, payment_token) pair for a new order."""
    token = str(uuid.uuid4())
    return f"{url_base.rstrip('/')}/{token}", token
