"""
Payment verifier for the x402 permit scheme

Drives one request through NO_PAYMENT -> CHALLENGE_ISSUED or
PROOF_RECEIVED -> VERIFIED / REJECTED. Nothing is kept between the 402 and
the client's retry; every decision is a function of the endpoint and the
X-PAYMENT header.
"""

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError
from web3 import Web3

from super_router.config import RouterConfig
from super_router.errors import PaymentMalformed, PaymentRejected
from super_router.models import Endpoint
from super_router.payments.challenge import ChallengeBuilder
from super_router.payments.facilitator import FacilitatorClient
from super_router.payments.models import (
    PAYMENT_SCHEME,
    PaymentProof,
    PaymentState,
    VerifiedPayment,
)
from super_router.payments.permit import permit_typed_data, recover_permit_signer

logger = structlog.get_logger()


@dataclass(frozen=True)
class ReceivedPayment:
    """A decoded proof plus the raw JSON forwarded to the facilitator"""
    proof: PaymentProof
    raw: Dict[str, Any]


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b or not Web3.is_address(a) or not Web3.is_address(b):
        return False
    return Web3.to_checksum_address(a) == Web3.to_checksum_address(b)


class PaymentVerifier:
    """
    Validates client-supplied payment proofs.

    Local checks are pure and run before any I/O. Authenticity and
    settlement are confirmed by the facilitator.
    """

    def __init__(
        self,
        config: RouterConfig,
        challenges: ChallengeBuilder,
        facilitator: FacilitatorClient,
        clock=time.time,
    ):
        self.config = config
        self.challenges = challenges
        self.facilitator = facilitator
        self._clock = clock

    @property
    def bypass_enabled(self) -> bool:
        return self.config.test_mode

    def initial_state(self, payment_header: Optional[str]) -> PaymentState:
        return PaymentState.PROOF_RECEIVED if payment_header else PaymentState.NO_PAYMENT

    def bypass(self) -> VerifiedPayment:
        """Treat the request as pre-verified (test mode)"""
        return VerifiedPayment(bypassed=True)

    @staticmethod
    def decode(payment_header: str) -> ReceivedPayment:
        """Decode a base64 X-PAYMENT header into a structured proof"""
        try:
            decoded = base64.b64decode(payment_header.strip(), validate=True)
            raw = json.loads(decoded)
        except (binascii.Error, ValueError) as e:
            raise PaymentMalformed(f"Invalid payment encoding: {e}") from e

        if not isinstance(raw, dict):
            raise PaymentMalformed("Payment payload is not a JSON object")

        try:
            proof = PaymentProof.model_validate(raw)
        except ValidationError as e:
            raise PaymentMalformed(f"Invalid payment payload: {e.error_count()} errors") from e

        return ReceivedPayment(proof=proof, raw=raw)

    def check(self, payment: ReceivedPayment, endpoint: Endpoint) -> None:
        """
        Validate the proof against the exact resource requested.
        Raises PaymentRejected with the first failing condition.
        """
        reason = self._first_violation(payment.proof, endpoint)
        if reason:
            logger.info(
                "payment_rejected_locally",
                endpoint=endpoint.path,
                reason=reason,
                state=PaymentState.REJECTED.value,
            )
            raise PaymentRejected(reason)

    def _first_violation(self, proof: PaymentProof, endpoint: Endpoint) -> Optional[str]:
        config = self.config
        payload = proof.payload
        authorization = payload.authorization

        if proof.scheme != PAYMENT_SCHEME:
            return f"Unsupported payment scheme: {proof.scheme}"
        if proof.network != config.payment_network:
            return f"Wrong network: {proof.network}"
        if payload.resource != endpoint.path:
            return "Payment was issued for a different resource"

        challenge_error = self.challenges.verify_nonce(
            endpoint, payload.challenge.nonce, payload.challenge.expires_at
        )
        if challenge_error:
            return challenge_error

        if not _same_address(payload.asset, config.payment_token_address):
            return "Wrong token contract"
        if not _same_address(payload.pay_to, config.wallet_address):
            return "Wrong payment recipient"
        if not _same_address(authorization.spender, config.facilitator_signer):
            return "Permit spender is not the facilitator"
        if not Web3.is_address(authorization.owner):
            return "Invalid permit owner"
        if authorization.value_int() < endpoint.price:
            return f"Insufficient amount: got {authorization.value}, expected {endpoint.price}"
        if authorization.deadline <= int(self._clock()):
            return "Payment authorization expired"
        if not self._signed_by_owner(proof):
            return "Invalid signature"
        return None

    def _signed_by_owner(self, proof: PaymentProof) -> bool:
        """Recover the Permit signer locally, as the facilitator will"""
        config = self.config
        payload = proof.payload
        authorization = payload.authorization
        try:
            typed_data = permit_typed_data(
                token_name=config.payment_token_name,
                token_version=config.payment_token_version,
                chain_id=config.chain_id,
                token_address=config.payment_token_address,
                owner=authorization.owner,
                spender=authorization.spender,
                value=authorization.value_int(),
                nonce=int(authorization.nonce),
                deadline=authorization.deadline,
            )
            recovered = recover_permit_signer(typed_data, payload.signature)
        except Exception as e:
            logger.debug("permit_signature_unrecoverable", error=str(e))
            return False
        return _same_address(recovered, authorization.owner)

    async def verify(self, payment: ReceivedPayment, endpoint: Endpoint) -> VerifiedPayment:
        """Ask the facilitator whether the proof is authentic and sufficient"""
        requirements = self._requirements(payment, endpoint)
        result = await self.facilitator.verify(payment.raw, requirements)
        if not result.is_valid:
            reason = result.invalid_reason or "Payment invalid"
            logger.warning("payment_invalid", endpoint=endpoint.path, reason=reason)
            raise PaymentRejected(reason)

        payer = result.payer or payment.proof.payload.authorization.owner
        logger.info("payment_verified", endpoint=endpoint.path, payer=payer, state=PaymentState.VERIFIED.value)
        return VerifiedPayment(payer=payer)

    async def settle(self, payment: ReceivedPayment, endpoint: Endpoint, verified: VerifiedPayment) -> VerifiedPayment:
        """Settle a verified proof. A no-op when settlement is disabled."""
        if not self.config.settle_payments:
            return verified

        requirements = self._requirements(payment, endpoint)
        result = await self.facilitator.settle(payment.raw, requirements)
        if not result.success:
            reason = result.error_reason or "Settlement failed"
            logger.error("payment_settlement_failed", endpoint=endpoint.path, reason=reason)
            raise PaymentRejected(f"Settlement failed: {reason}")

        logger.info(
            "payment_settled",
            endpoint=endpoint.path,
            payer=result.payer or verified.payer,
            transaction=result.transaction,
        )
        return VerifiedPayment(
            payer=result.payer or verified.payer,
            transaction=result.transaction,
            settled=True,
        )

    async def confirm(self, payment: ReceivedPayment, endpoint: Endpoint) -> VerifiedPayment:
        """Verify then settle in one call, for callers without a cancellation boundary"""
        verified = await self.verify(payment, endpoint)
        return await self.settle(payment, endpoint, verified)

    def _requirements(self, payment: ReceivedPayment, endpoint: Endpoint):
        challenge = payment.proof.payload.challenge
        requirement = self.challenges.build(endpoint, expires_at=challenge.expires_at)
        return requirement.accepts[0]
