import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from kitchen_api.core.errors import ExternalServiceError
from kitchen_api.services.payments import StripeGateway
from kitchen_api.services.payments.stripe_gateway import cents_to_dollars

SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _payload() -> bytes:
    return json.dumps(
        {"id": "evt_sig", "object": "event", "type": "checkout.session.completed", "data": {"object": {}}}
    ).encode()


def test_cents_to_dollars() -> None:
    assert cents_to_dollars(3350) == Decimal("33.50")
    assert cents_to_dollars(None) == Decimal("0.00")


def test_valid_signature_returns_event() -> None:
    payload = _payload()
    event = StripeGateway(api_key="", webhook_secret=SECRET).construct_event(payload, sign(payload))

    assert event["id"] == "evt_sig"
    assert event["type"] == "checkout.session.completed"


def test_tampered_payload_is_rejected() -> None:
    payload = _payload()
    header = sign(payload)
    tampered = payload.replace(b"evt_sig", b"evt_bad")

    with pytest.raises(ExternalServiceError) as excinfo:
        StripeGateway(api_key="", webhook_secret=SECRET).construct_event(tampered, header)
    assert excinfo.value.status_code == 400


def test_stale_signature_is_rejected() -> None:
    payload = _payload()
    header = sign(payload, timestamp=int(time.time()) - 3600)

    with pytest.raises(ExternalServiceError) as excinfo:
        StripeGateway(api_key="", webhook_secret=SECRET, tolerance_seconds=300).construct_event(payload, header)
    assert excinfo.value.status_code == 400


def test_missing_signature_or_secret() -> None:
    payload = _payload()
    with pytest.raises(ExternalServiceError) as missing_header:
        StripeGateway(api_key="", webhook_secret=SECRET).construct_event(payload, None)
    assert missing_header.value.status_code == 400

    with pytest.raises(ExternalServiceError) as missing_secret:
        StripeGateway(api_key="", webhook_secret="").construct_event(payload, sign(payload))
    assert missing_secret.value.status_code == 503
