"""
Buyer-side permit signing
Answers a 402 challenge with a signed EIP-2612 Permit encoded as an X-PAYMENT header
"""

import base64
import json
import time
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3
import structlog

from super_router.config import CHAIN_IDS
from super_router.payments.models import (
    PAYMENT_SCHEME,
    X402_VERSION,
    ChallengeEcho,
    PaymentProof,
    PaymentRequirement,
    PermitAuthorization,
    PermitPayload,
)
from super_router.payments.permit import permit_typed_data

logger = structlog.get_logger()

# EIP-2612 nonces(owner) view
PERMIT_NONCES_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "nonces",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]


class PermitSigner:
    """
    Signs token permits for the router's payment challenges.

    The spender is the facilitator signer advertised in the challenge, so the
    facilitator can pull the funds to the payee during settlement.
    """

    def __init__(self, private_key: str, rpc_url: Optional[str] = None, validity_seconds: int = 300):
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.rpc_url = rpc_url
        self.validity_seconds = validity_seconds

    def permit_nonce(self, token_address: str) -> int:
        """Read the owner's current permit nonce from the token contract"""
        if not self.rpc_url:
            raise ValueError("rpc_url is required to read the permit nonce")
        w3 = Web3(Web3.HTTPProvider(self.rpc_url))
        token = w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=PERMIT_NONCES_ABI)
        return token.functions.nonces(self.address).call()

    def sign(
        self,
        requirement: PaymentRequirement,
        nonce: Optional[int] = None,
        deadline: Optional[int] = None,
    ) -> PaymentProof:
        """
        Sign a permit for the amount and terms of a 402 body.

        Args:
            requirement: Decoded 402 response body
            nonce: Permit nonce; read from chain when omitted
            deadline: Permit deadline; defaults to now + validity window
        """
        if not requirement.accepts:
            raise ValueError("No payment options available")

        option = requirement.accepts[0]
        spender = option.extra.get("facilitatorSigner")
        if not spender:
            raise ValueError("Challenge does not name a facilitator signer")

        if nonce is None:
            nonce = self.permit_nonce(requirement.token_address)
        if deadline is None:
            deadline = int(time.time()) + self.validity_seconds

        typed_data = self._create_typed_data(requirement, spender, nonce, deadline)
        encoded = encode_typed_data(full_message=typed_data)
        signed = self.account.sign_message(encoded)

        logger.info(
            "permit_signed",
            owner=self.address,
            spender=spender,
            value=requirement.amount,
            resource=requirement.resource,
        )

        return PaymentProof(
            x402_version=X402_VERSION,
            scheme=PAYMENT_SCHEME,
            network=requirement.network,
            payload=PermitPayload(
                signature=Web3.to_hex(signed.signature),
                authorization=PermitAuthorization(
                    owner=self.address,
                    spender=Web3.to_checksum_address(spender),
                    value=requirement.amount,
                    nonce=str(nonce),
                    deadline=deadline,
                ),
                asset=requirement.token_address,
                pay_to=requirement.pay_to,
                resource=requirement.resource,
                challenge=ChallengeEcho(nonce=requirement.nonce, expires_at=requirement.expires_at),
            ),
        )

    @staticmethod
    def encode_header(proof: PaymentProof) -> str:
        """Encode a proof as the base64 X-PAYMENT header value"""
        document = proof.model_dump(by_alias=True)
        return base64.b64encode(json.dumps(document).encode()).decode()

    def _create_typed_data(self, requirement: PaymentRequirement, spender: str, nonce: int, deadline: int) -> dict:
        return permit_typed_data(
            token_name=requirement.token_name,
            token_version=requirement.token_version,
            chain_id=CHAIN_IDS[requirement.network],
            token_address=requirement.token_address,
            owner=self.address,
            spender=spender,
            value=int(requirement.amount),
            nonce=nonce,
            deadline=deadline,
        )
