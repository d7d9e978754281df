"""
Super Router Payment Module
x402 permit-scheme challenges, verification and buyer-side signing
"""

from super_router.payments.models import (
    PaymentState,
    PaymentAccepts,
    PaymentRequirement,
    PaymentProof,
    PermitAuthorization,
    VerifiedPayment,
)
from super_router.payments.challenge import ChallengeBuilder
from super_router.payments.facilitator import FacilitatorClient
from super_router.payments.verifier import PaymentVerifier, ReceivedPayment
from super_router.payments.amounts import to_raw_units, to_human_units
from super_router.payments.permit import permit_typed_data, recover_permit_signer

__all__ = [
    "PaymentState",
    "PaymentAccepts",
    "PaymentRequirement",
    "PaymentProof",
    "PermitAuthorization",
    "VerifiedPayment",
    "ChallengeBuilder",
    "FacilitatorClient",
    "PaymentVerifier",
    "ReceivedPayment",
    "to_raw_units",
    "to_human_units",
    "permit_typed_data",
    "recover_permit_signer",
]
