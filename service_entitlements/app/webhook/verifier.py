"""
Webhook signature verification using the Stripe signing scheme.
"""

from typing import Optional

import stripe

from shared.errors import AuthenticityError, ServiceError, ValidationError
from shared.logging import get_logger


class SignatureVerifier:
    """Checks the Stripe-Signature header against the raw request body."""

    def __init__(self, secret: Optional[str], tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance
        self.logger = get_logger("entitlements.webhook.verifier")

    def verify(self, payload: bytes, signature: Optional[str]) -> str:
        """Return the decoded body once its signature checks out."""
        if not self.secret:
            self.logger.critical("Webhook signing secret is not configured")
            raise ServiceError("Webhook endpoint is not configured")

        if not signature:
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("Webhook body is not UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise AuthenticityError(str(e)) from e

        return body
