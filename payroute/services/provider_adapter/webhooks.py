"""Webhook signature verification (HMAC-SHA256 over the raw body)."""

import hashlib
import hmac

from payroute.common.errors import InvalidSignatureError
from payroute.common.logging import logger

SIGNATURE_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, header: str | None, secret: str) -> bool:
    """Constant-time compare of `header` against the expected hex digest."""

    if not header or not secret:
        return False
    signature = header.strip()
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(signature, compute_signature(payload, secret))


class WebhookVerifier:
    """Per-provider secrets; unknown providers fail closed."""

    def __init__(self, secrets: dict[str, str]) -> None:
        self.secrets = dict(secrets)

    def verify(self, provider: str, payload: bytes, header: str | None) -> None:
        secret = self.secrets.get(provider)
        if secret is None:
            logger.warning("webhook_rejected provider=%s reason=no_secret", provider)
            raise InvalidSignatureError(f"no webhook secret configured for provider {provider}")
        if not verify_signature(payload, header, secret):
            logger.warning("webhook_rejected provider=%s reason=bad_signature", provider)
            raise InvalidSignatureError(f"invalid webhook signature for provider {provider}")
