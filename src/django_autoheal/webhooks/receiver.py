from __future__ import annotations

import hashlib
import hmac

from django_autoheal.conf import get_webhook_secret
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.exceptions import SignatureVerificationError

SIGNATURE_PREFIX = "sha256="


class GitHubWebhookReceiver:
    """
    Receiver for verifying GitHub webhook signatures.

    GitHub signs each delivery with an HMAC-SHA256 of the raw body using
    the webhook secret and sends it as ``X-Hub-Signature-256``.
    """

    def __init__(self, secret: str) -> None:
        """
        Initialize the receiver.

        Args:
            secret: The webhook secret configured on the GitHub App
        """
        self._secret = secret.encode("utf-8")

    def expected_signature(self, body: bytes) -> str:
        digest = hmac.new(self._secret, body, hashlib.sha256).hexdigest()
        return f"{SIGNATURE_PREFIX}{digest}"

    def verify(self, signature: str, body: bytes) -> None:
        """
        Verify a delivery signature in constant time.

        Args:
            signature: The X-Hub-Signature-256 header value
            body: The raw request body

        Raises:
            SignatureVerificationError: If the signature does not match
        """
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            raise SignatureVerificationError(
                "GitHub signature verification failed: "
                "missing or malformed signature"
            )
        expected = self.expected_signature(body).encode("ascii")
        received = signature.encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected, received):
            raise SignatureVerificationError(
                "GitHub signature verification failed: signature mismatch"
            )


def get_receiver() -> GitHubWebhookReceiver:
    """
    Build a receiver from the configured webhook secret.

    Raises:
        ConfigurationError: If GITHUB_WEBHOOK_SECRET is not set
    """
    secret = get_webhook_secret()
    if not secret:
        raise ConfigurationError(
            "GitHub webhook secret not configured. "
            "Set GITHUB_WEBHOOK_SECRET."
        )
    return GitHubWebhookReceiver(secret)
