"""
x402-compliant payment models for the router
Permit-scheme variant: the payer signs an EIP-2612 style permit that the
facilitator redeems on the payee's behalf
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


X402_VERSION = 1
PAYMENT_SCHEME = "permit"


class PaymentState(str, Enum):
    """Per-request payment state machine"""
    NO_PAYMENT = "no_payment"
    CHALLENGE_ISSUED = "challenge_issued"
    PROOF_RECEIVED = "proof_received"
    VERIFIED = "verified"
    REJECTED = "rejected"
    TERMINAL = "terminal"


class PaymentAccepts(BaseModel):
    """Single payment option in x402 format"""
    model_config = ConfigDict(populate_by_name=True)

    scheme: str = PAYMENT_SCHEME
    network: str
    max_amount_required: str = Field(alias="maxAmountRequired")
    resource: str
    description: str = ""
    mime_type: str = Field(default="application/json", alias="mimeType")
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: int = Field(default=300, alias="maxTimeoutSeconds")
    asset: str
    extra: Dict[str, Any] = Field(default_factory=dict)


class PaymentRequirement(BaseModel):
    """HTTP 402 body: flat challenge fields plus the x402 accepts list"""
    model_config = ConfigDict(populate_by_name=True)

    token_address: str
    token_symbol: str
    token_name: str
    token_decimals: int
    token_version: str
    amount: str = Field(description="Required amount in raw token units")
    network: str
    pay_to: str
    resource: str
    nonce: str = Field(description="Challenge nonce, echoed back in the proof")
    expires_at: int = Field(description="Challenge expiry, unix seconds")
    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    accepts: List[PaymentAccepts] = Field(default_factory=list)
    error: Optional[str] = None


class PermitAuthorization(BaseModel):
    """EIP-712 Permit message signed by the payer"""
    owner: str
    spender: str
    value: str
    nonce: str
    deadline: int

    @field_validator("value", "nonce", mode="before")
    @classmethod
    def coerce_uint(cls, v):
        if isinstance(v, bool):
            raise ValueError("expected an unsigned integer")
        if isinstance(v, int):
            v = str(v)
        if isinstance(v, str):
            _parse_uint(v)
        return v

    def value_int(self) -> int:
        return _parse_uint(self.value)


class ChallengeEcho(BaseModel):
    """Challenge fields the client copies from the 402 body into its proof"""
    nonce: str
    expires_at: int


class PermitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signature: str
    authorization: PermitAuthorization
    asset: str
    pay_to: str = Field(alias="payTo")
    resource: str
    challenge: ChallengeEcho


class PaymentProof(BaseModel):
    """Decoded X-PAYMENT header"""
    model_config = ConfigDict(populate_by_name=True)

    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    scheme: str = PAYMENT_SCHEME
    network: str
    payload: PermitPayload


class VerifyResponse(BaseModel):
    """Facilitator /verify response"""
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    invalid_reason: Optional[str] = Field(default=None, alias="invalidReason")
    payer: Optional[str] = None


class SettleResponse(BaseModel):
    """Facilitator /settle response"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    network: Optional[str] = None
    transaction: Optional[str] = None
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    payer: Optional[str] = None


class VerifiedPayment(BaseModel):
    """Outcome of a successful verification, or of bypass mode"""
    payer: Optional[str] = None
    transaction: Optional[str] = None
    settled: bool = False
    bypassed: bool = False


def _parse_uint(text: str) -> int:
    cleaned = text.strip()
    if cleaned.lower().startswith("0x"):
        value = int(cleaned[2:], 16)
    else:
        value = int(cleaned)
    if value < 0:
        raise ValueError("negative amount")
    return value
