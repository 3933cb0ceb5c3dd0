"""Webhook payload signer using HMAC-SHA256."""

import hashlib
import hmac
import secrets


class WebhookSigner:
    """Signs webhook payloads for verification by the receiver."""

    @staticmethod
    def sign(payload: bytes | str, secret: str) -> str:
        """
        Generate the HMAC-SHA256 signature of a webhook payload.

        The signature is computed over the exact body bytes sent on the wire,
        so receivers must verify against the raw request body.

        Args:
            payload: The serialized JSON body
            secret: The subscriber's shared secret

        Returns:
            Lowercase hex digest
        """
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    @staticmethod
    def verify(payload: bytes | str, signature: str, secret: str) -> bool:
        """
        Verify a webhook signature in constant time.

        Args:
            payload: The raw request body
            signature: The value of the X-Webhook-Signature header
            secret: The shared secret

        Returns:
            True if signature is valid, False otherwise
        """
        expected = WebhookSigner.sign(payload, secret)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    @staticmethod
    def get_headers(
        payload: bytes,
        secret: str,
        event_type: str,
        delivery_id: int,
        user_agent: str,
    ) -> dict[str, str]:
        """
        Generate the fixed webhook HTTP headers including the signature.

        Subscriber-configured headers are layered on top by the caller.
        """
        return {
            "Content-Type": "application/json",
            "User-Agent": user_agent,
            "X-Webhook-Signature": WebhookSigner.sign(payload, secret),
            "X-Webhook-Event": event_type,
            "X-Webhook-Delivery-ID": str(delivery_id),
        }


def generate_webhook_secret() -> str:
    """Generate a random secret for webhook signing (64 hex characters)."""
    return secrets.token_hex(32)
