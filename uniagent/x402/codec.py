"""
x402 header codec.

Decodes the PAYMENT-REQUIRED challenge and PAYMENT-RESPONSE settlement
headers and encodes the signed payment payload. Decoding accepts both
base64-wrapped JSON and raw JSON and never raises.
"""

import base64
import binascii
import json
import logging
from typing import Any

from pydantic import ValidationError

from uniagent.core.constants import X402_VERSION
from uniagent.schemas.payment import (
    PaymentAuthorization,
    PaymentRequirement,
    SettlementResponse,
)

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_HEADERS = ("PAYMENT-REQUIRED", "X-PAYMENT-REQUIRED")
PAYMENT_RESPONSE_HEADERS = ("PAYMENT-RESPONSE", "X-PAYMENT-RESPONSE")
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
LEGACY_PAYMENT_HEADER = "X-PAYMENT"


def payment_header_name(x402_version: int) -> str:
    """Authorization header name for the given protocol version."""
    return LEGACY_PAYMENT_HEADER if x402_version < 2 else PAYMENT_SIGNATURE_HEADER


def decode_header(header: str | None) -> dict[str, Any] | None:
    """
    Decode a base64-JSON or raw-JSON header value into a dict.

    Returns:
        The decoded object, or None when the value is missing or unreadable
    """
    if not header or not header.strip():
        return None

    value = header.strip()
    candidates: list[str] = []
    try:
        padded = value + "=" * (-len(value) % 4)
        candidates.append(base64.b64decode(padded, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        pass
    candidates.append(value)

    for text in candidates:
        try:
            decoded = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(decoded, dict):
            return decoded

    logger.warning(f"Failed to decode x402 header ({len(value)} chars)")
    return None


def _parse_amount(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValueError("amount must be an integer")
    if isinstance(raw, int):
        if raw < 0:
            raise ValueError(f"amount is negative: {raw}")
        return raw
    text = str(raw).strip()
    if not text.isdigit():
        raise ValueError(f"amount is not a non-negative integer: {raw!r}")
    return int(text)


def _select_accept(accepts: list[Any]) -> dict[str, Any] | None:
    options = [entry for entry in accepts if isinstance(entry, dict)]
    if not options:
        return None
    for entry in options:
        if entry.get("scheme") == "exact":
            return entry
    return options[0]


def _requirement_from_challenge(data: dict[str, Any]) -> PaymentRequirement | None:
    entry = _select_accept(data.get("accepts") or [])
    if entry is None:
        return None

    resource = data.get("resource", entry.get("resource"))
    description = entry.get("description")
    if isinstance(resource, dict):
        description = description or resource.get("description")
        resource = resource.get("url")

    return PaymentRequirement(
        scheme=entry["scheme"],
        network=entry["network"],
        pay_to=entry["payTo"],
        amount=_parse_amount(entry.get("amount", entry.get("maxAmountRequired"))),
        asset=entry.get("asset"),
        resource=resource,
        description=description,
        error_code=data.get("error") or None,
        x402_version=int(data.get("x402Version", X402_VERSION)),
        extra=entry.get("extra") or {},
    )


def _requirement_from_payload(data: dict[str, Any]) -> PaymentRequirement | None:
    payload = data.get("payload")
    if not isinstance(payload, dict) or not isinstance(payload.get("authorization"), dict):
        return None
    authorization = payload["authorization"]
    accepted = data.get("accepted") if isinstance(data.get("accepted"), dict) else {}
    return PaymentRequirement(
        scheme=data.get("scheme") or accepted["scheme"],
        network=data.get("network") or accepted["network"],
        pay_to=authorization["to"],
        amount=_parse_amount(authorization.get("value")),
        asset=accepted.get("asset"),
        x402_version=int(data.get("x402Version", X402_VERSION)),
        extra=accepted.get("extra") or {},
    )


def decode_payment_required(header: str | None) -> PaymentRequirement | None:
    """
    Decode a payment challenge header into a PaymentRequirement.

    Accepts v2 (``amount``) and v1 (``maxAmountRequired``) challenges. A
    signed payment payload is also accepted and yields the requirement it
    satisfies, so ``decode_payment_required(encode_payment_signature(...))``
    round-trips.

    Returns:
        PaymentRequirement, or None when the header is missing or malformed
    """
    data = decode_header(header)
    if data is None:
        return None
    try:
        if "accepts" in data:
            return _requirement_from_challenge(data)
        return _requirement_from_payload(data)
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        logger.warning(f"Malformed payment challenge: {e}")
        return None


def encode_payment_signature(
    authorization: PaymentAuthorization,
    requirement: PaymentRequirement,
) -> str:
    """
    Encode a signed authorization as the base64 payment header value.

    The JSON is canonical (fixed key order, compact separators) so the
    counterparty's verifier can parse it.
    """
    body: dict[str, Any] = {
        "x402Version": requirement.x402_version,
        "scheme": requirement.scheme,
        "network": requirement.network,
        "payload": {
            "signature": authorization.signature,
            "authorization": authorization.authorization_fields(),
        },
    }
    if requirement.x402_version >= 2:
        accepted: dict[str, Any] = {
            "scheme": requirement.scheme,
            "network": requirement.network,
            "amount": str(requirement.amount if requirement.amount is not None else authorization.value),
            "asset": requirement.asset,
            "payTo": requirement.pay_to,
        }
        if requirement.extra:
            accepted["extra"] = requirement.extra
        body["accepted"] = accepted
    raw = json.dumps(body, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_settlement_response(header: str | None) -> SettlementResponse | None:
    """Decode a PAYMENT-RESPONSE header. Returns None when absent or unreadable."""
    data = decode_header(header)
    if data is None:
        return None
    try:
        return SettlementResponse.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Malformed settlement response: {e}")
        return None


def first_header(headers: Any, names: tuple[str, ...]) -> str | None:
    """Return the first present header among ``names`` (case-insensitive mapping)."""
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None
