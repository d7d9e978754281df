"""
x402 payment challenge builder

Challenges are not stored. The nonce is an HMAC over the terms of the
challenge, so the verifier can re-derive it from the endpoint being
requested and reject proofs issued for another resource, price or payee.
"""

import hashlib
import hmac
import secrets
import time
from typing import Optional

import structlog

from super_router.config import RouterConfig
from super_router.models import Endpoint
from super_router.payments.models import (
    PAYMENT_SCHEME,
    X402_VERSION,
    PaymentAccepts,
    PaymentRequirement,
)

logger = structlog.get_logger()


class ChallengeBuilder:
    """Produces HTTP 402 payment requirements for an endpoint"""

    def __init__(self, config: RouterConfig, clock=time.time):
        self.config = config
        self._clock = clock
        if config.challenge_secret:
            self._secret = config.challenge_secret.encode("utf-8")
        else:
            # Outstanding challenges do not survive a restart without a shared secret
            self._secret = secrets.token_bytes(32)
            logger.warning("challenge_secret_generated", message="CHALLENGE_SECRET not set, using a per-process key")

    def build(
        self,
        endpoint: Endpoint,
        error: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> PaymentRequirement:
        """
        Create the payment requirement for one unpaid request.
        Passing `expires_at` rebuilds the terms of an already issued challenge.
        """
        config = self.config
        if expires_at is None:
            expires_at = int(self._clock()) + config.challenge_ttl_seconds
        amount = str(endpoint.price)
        nonce = self.sign(endpoint.path, amount, expires_at)

        accepts = PaymentAccepts(
            scheme=PAYMENT_SCHEME,
            network=config.payment_network,
            max_amount_required=amount,
            resource=endpoint.path,
            description=endpoint.description,
            pay_to=config.wallet_address,
            max_timeout_seconds=config.challenge_ttl_seconds,
            asset=config.payment_token_address,
            extra={
                "token": config.payment_token_symbol,
                "address": config.payment_token_address,
                "decimals": config.payment_token_decimals,
                "name": config.payment_token_name,
                "version": config.payment_token_version,
                "facilitatorSigner": config.facilitator_signer,
                "nonce": nonce,
                "expiresAt": expires_at,
            },
        )

        return PaymentRequirement(
            token_address=config.payment_token_address,
            token_symbol=config.payment_token_symbol,
            token_name=config.payment_token_name,
            token_decimals=config.payment_token_decimals,
            token_version=config.payment_token_version,
            amount=amount,
            network=config.payment_network,
            pay_to=config.wallet_address,
            resource=endpoint.path,
            nonce=nonce,
            expires_at=expires_at,
            x402_version=X402_VERSION,
            accepts=[accepts],
            error=error,
        )

    def sign(self, resource: str, amount: str, expires_at: int) -> str:
        config = self.config
        message = "|".join([
            resource,
            amount,
            config.wallet_address.lower(),
            config.payment_token_address.lower(),
            config.payment_network,
            str(expires_at),
        ])
        return hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_nonce(self, endpoint: Endpoint, nonce: str, expires_at: int) -> Optional[str]:
        """
        Check an echoed challenge against the endpoint actually requested.

        Returns None when valid, otherwise the rejection reason.
        """
        if expires_at < int(self._clock()):
            return "Payment challenge expired"
        expected = self.sign(endpoint.path, str(endpoint.price), expires_at)
        if not hmac.compare_digest(expected, nonce):
            return "Payment challenge does not match this resource or price"
        return None
