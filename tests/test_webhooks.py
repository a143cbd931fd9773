"""Webhook HMAC verification fails closed."""

import pytest

from payroute.common.errors import InvalidSignatureError
from payroute.services.provider_adapter.webhooks import WebhookVerifier, compute_signature, verify_signature

PAYLOAD = b'{"type":"charge.succeeded","id":"evt_1"}'


def test_valid_signature_with_and_without_prefix():
    signature = compute_signature(PAYLOAD, "whsec_test")

    assert verify_signature(PAYLOAD, signature, "whsec_test")
    assert verify_signature(PAYLOAD, f"sha256={signature}", "whsec_test")


@pytest.mark.parametrize("header", [None, "", "deadbeef"])
def test_bad_or_missing_signature(header):
    assert not verify_signature(PAYLOAD, header, "whsec_test")


def test_tampered_payload_rejected():
    signature = compute_signature(PAYLOAD, "whsec_test")

    assert not verify_signature(PAYLOAD + b" ", signature, "whsec_test")


def test_verifier_rejects_unknown_provider():
    verifier = WebhookVerifier({"stripe": "whsec_test"})

    with pytest.raises(InvalidSignatureError):
        verifier.verify("xendit", PAYLOAD, compute_signature(PAYLOAD, "whsec_test"))


def test_verifier_accepts_configured_provider():
    verifier = WebhookVerifier({"stripe": "whsec_test"})

    verifier.verify("stripe", PAYLOAD, compute_signature(PAYLOAD, "whsec_test"))

    with pytest.raises(InvalidSignatureError):
        verifier.verify("stripe", PAYLOAD, compute_signature(PAYLOAD, "other"))
