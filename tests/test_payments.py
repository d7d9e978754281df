"""
Unit tests for x402 payment handling
Tests amounts, challenges, local proof checks, facilitator confirmation and permit signing
"""

import base64
import json
import time

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from super_router.errors import FacilitatorUnavailable, PaymentMalformed, PaymentRejected
from super_router.payments.amounts import to_human_units, to_raw_units
from super_router.payments.challenge import ChallengeBuilder
from super_router.payments.models import PaymentRequirement, PaymentState
from super_router.payments.signer import PermitSigner
from super_router.payments.verifier import PaymentVerifier

from tests.factories import (
    BUYER_ADDRESS,
    FACILITATOR_SIGNER,
    SELLER_KEY,
    SETTLE_TX,
    WALLET_ADDRESS,
    make_config,
)


def encode(document) -> str:
    return base64.b64encode(json.dumps(document).encode()).decode()


def tamper(header: str, mutate) -> str:
    document = json.loads(base64.b64decode(header))
    mutate(document)
    return encode(document)


class TestAmounts:

    def test_whole_and_fractional(self):
        assert to_raw_units("1000", 18) == 1000 * 10**18
        assert to_raw_units("1.5", 6) == 1_500_000
        assert to_raw_units("0", 6) == 0

    def test_rejects_bad_input(self):
        for bad in ("-1", "abc", "1.2345678", "NaN", "Infinity"):
            with pytest.raises(ValueError):
                to_raw_units(bad, 6)

    def test_human_units(self):
        assert to_human_units(1_500_000, 6) == "1.5"
        assert to_human_units(1000 * 10**18, 18) == "1000"


class TestChallengeBuilder:

    def test_requirement_matches_endpoint(self, config, image_endpoint):
        requirement = ChallengeBuilder(config).build(image_endpoint)

        assert requirement.amount == str(image_endpoint.price)
        assert requirement.token_symbol == config.payment_token_symbol
        assert requirement.token_address == config.payment_token_address
        assert requirement.token_decimals == 18
        assert requirement.pay_to == WALLET_ADDRESS
        assert requirement.network == "base"
        assert requirement.resource == "/generate_image"
        assert requirement.expires_at > time.time()
        assert requirement.accepts[0].max_amount_required == requirement.amount
        assert requirement.accepts[0].extra["facilitatorSigner"] == FACILITATOR_SIGNER

    def test_x402_body_aliases(self, config, image_endpoint):
        body = ChallengeBuilder(config).build(image_endpoint).model_dump(by_alias=True)

        assert body["x402Version"] == 1
        assert body["accepts"][0]["payTo"] == WALLET_ADDRESS
        assert body["accepts"][0]["maxAmountRequired"] == str(image_endpoint.price)

    def test_nonce_is_bound_to_resource_and_price(self, config, image_endpoint, gif_endpoint):
        builder = ChallengeBuilder(config)
        requirement = builder.build(image_endpoint)

        assert builder.verify_nonce(image_endpoint, requirement.nonce, requirement.expires_at) is None
        assert builder.verify_nonce(gif_endpoint, requirement.nonce, requirement.expires_at) is not None

        cheaper = image_endpoint.model_copy(update={"price": 1})
        assert builder.verify_nonce(cheaper, requirement.nonce, requirement.expires_at) is not None

    def test_expired_challenge(self, config, image_endpoint):
        now = [1_000_000.0]
        builder = ChallengeBuilder(config, clock=lambda: now[0])
        requirement = builder.build(image_endpoint)

        now[0] += config.challenge_ttl_seconds + 1
        assert "expired" in builder.verify_nonce(image_endpoint, requirement.nonce, requirement.expires_at)

    def test_nonce_survives_restart_with_shared_secret(self, config, image_endpoint):
        requirement = ChallengeBuilder(config).build(image_endpoint)
        assert ChallengeBuilder(config).verify_nonce(image_endpoint, requirement.nonce, requirement.expires_at) is None

    def test_random_secret_without_configuration(self, image_endpoint):
        config = make_config(challenge_secret="")
        requirement = ChallengeBuilder(config).build(image_endpoint)
        other = ChallengeBuilder(config)
        assert other.verify_nonce(image_endpoint, requirement.nonce, requirement.expires_at) is not None


class TestPaymentVerifierLocalChecks:
    """Decoding and checks that run before any network call"""

    @pytest.fixture
    def verifier(self, services):
        return services.orchestrator.verifier

    def test_initial_state(self, verifier):
        assert verifier.initial_state(None) is PaymentState.NO_PAYMENT
        assert verifier.initial_state("abc") is PaymentState.PROOF_RECEIVED

    def test_decode_valid_header(self, verifier, pay, image_endpoint):
        payment = verifier.decode(pay(image_endpoint))

        assert payment.proof.network == "base"
        assert payment.proof.payload.authorization.owner == BUYER_ADDRESS
        assert payment.raw["payload"]["payTo"] == WALLET_ADDRESS

    @pytest.mark.parametrize("header", [
        "not base64 at all!!",
        base64.b64encode(b"not json").decode(),
        base64.b64encode(b"[1, 2]").decode(),
        encode({"network": "base"}),
    ])
    def test_decode_malformed(self, verifier, header):
        with pytest.raises(PaymentMalformed):
            PaymentVerifier.decode(header)

    def test_valid_proof_passes(self, verifier, pay, image_endpoint):
        verifier.check(verifier.decode(pay(image_endpoint)), image_endpoint)

    def test_proof_for_other_endpoint_rejected(self, verifier, pay, image_endpoint, gif_endpoint):
        payment = verifier.decode(pay(image_endpoint))
        with pytest.raises(PaymentRejected):
            verifier.check(payment, gif_endpoint)

    def test_proof_replayed_against_relabelled_resource_rejected(self, verifier, pay, image_endpoint, gif_endpoint):
        """Rewriting the resource field does not help; the challenge nonce still binds the price"""
        header = tamper(pay(image_endpoint), lambda d: d["payload"].update(resource=gif_endpoint.path))
        with pytest.raises(PaymentRejected):
            verifier.check(verifier.decode(header), gif_endpoint)

    @pytest.mark.parametrize("mutate,reason", [
        (lambda d: d.update(network="base-sepolia"), "network"),
        (lambda d: d["payload"].update(asset="0x" + "11" * 20), "token"),
        (lambda d: d["payload"].update(payTo="0x" + "22" * 20), "recipient"),
        (lambda d: d["payload"]["authorization"].update(spender="0x" + "33" * 20), "spender"),
        (lambda d: d["payload"]["authorization"].update(value="1"), "Insufficient"),
        (lambda d: d["payload"]["authorization"].update(deadline=1), "expired"),
        (lambda d: d["payload"]["challenge"].update(nonce="00" * 32), "challenge"),
    ])
    def test_mismatches_rejected(self, verifier, pay, image_endpoint, mutate, reason):
        header = tamper(pay(image_endpoint), mutate)
        with pytest.raises(PaymentRejected) as exc_info:
            verifier.check(verifier.decode(header), image_endpoint)
        assert reason.lower() in exc_info.value.reason.lower()

    def test_overpayment_accepted(self, services, verifier, buyer, image_endpoint):
        requirement = services.orchestrator.challenges.build(image_endpoint)
        generous = requirement.model_copy(update={"amount": str(image_endpoint.price * 2)})
        proof = buyer.sign(generous, nonce=0, deadline=int(time.time()) + 600)

        verifier.check(verifier.decode(PermitSigner.encode_header(proof)), image_endpoint)

    def test_forged_signature_rejected(self, verifier, pay, image_endpoint):
        header = tamper(pay(image_endpoint), lambda d: d["payload"].update(signature="0x" + "00" * 65))
        with pytest.raises(PaymentRejected) as exc_info:
            verifier.check(verifier.decode(header), image_endpoint)
        assert exc_info.value.reason == "Invalid signature"

    def test_garbage_signature_rejected(self, verifier, pay, image_endpoint):
        header = tamper(pay(image_endpoint), lambda d: d["payload"].update(signature="not hex"))
        with pytest.raises(PaymentRejected) as exc_info:
            verifier.check(verifier.decode(header), image_endpoint)
        assert exc_info.value.reason == "Invalid signature"

    def test_permit_signed_by_someone_else_rejected(self, services, verifier, image_endpoint):
        """A permit claiming the buyer as owner but signed with another key"""
        impostor = PermitSigner(private_key=SELLER_KEY)
        requirement = services.orchestrator.challenges.build(image_endpoint)
        proof = impostor.sign(requirement, nonce=0, deadline=int(time.time()) + 600)
        header = tamper(
            PermitSigner.encode_header(proof),
            lambda d: d["payload"]["authorization"].update(owner=BUYER_ADDRESS),
        )

        with pytest.raises(PaymentRejected) as exc_info:
            verifier.check(verifier.decode(header), image_endpoint)
        assert exc_info.value.reason == "Invalid signature"

    def test_signed_nonce_is_part_of_the_permit(self, verifier, pay, image_endpoint):
        header = tamper(pay(image_endpoint), lambda d: d["payload"]["authorization"].update(nonce="7"))
        with pytest.raises(PaymentRejected):
            verifier.check(verifier.decode(header), image_endpoint)


class TestPaymentVerifierFacilitator:

    @pytest.fixture
    def verifier(self, services):
        return services.orchestrator.verifier

    @pytest.mark.asyncio
    async def test_verify_and_settle(self, verifier, pay, image_endpoint, upstream):
        payment = verifier.decode(pay(image_endpoint))

        verified = await verifier.confirm(payment, image_endpoint)

        assert verified.payer == BUYER_ADDRESS
        assert verified.transaction == SETTLE_TX
        assert verified.settled is True
        assert upstream.count("facilitator.test", "/verify") == 1
        assert upstream.count("facilitator.test", "/settle") == 1

        body = json.loads(upstream.calls[0].content)
        assert body["paymentRequirements"]["payTo"] == WALLET_ADDRESS
        assert body["paymentRequirements"]["maxAmountRequired"] == str(image_endpoint.price)
        assert body["paymentPayload"] == payment.raw

    @pytest.mark.asyncio
    async def test_invalid_proof_rejected(self, verifier, pay, image_endpoint, upstream):
        upstream.verify_valid = False
        payment = verifier.decode(pay(image_endpoint))

        with pytest.raises(PaymentRejected) as exc_info:
            await verifier.verify(payment, image_endpoint)
        assert exc_info.value.reason == "invalid_signature"

    @pytest.mark.asyncio
    async def test_settlement_failure_rejected(self, verifier, pay, image_endpoint, upstream):
        upstream.settle_success = False
        payment = verifier.decode(pay(image_endpoint))

        with pytest.raises(PaymentRejected):
            await verifier.confirm(payment, image_endpoint)

    @pytest.mark.asyncio
    async def test_settlement_disabled(self, build, pay, image_endpoint, upstream):
        verifier = build(settle_payments=False).orchestrator.verifier
        payment = verifier.decode(pay(image_endpoint))

        verified = await verifier.confirm(payment, image_endpoint)

        assert verified.settled is False
        assert upstream.count("facilitator.test", "/settle") == 0

    @pytest.mark.asyncio
    async def test_facilitator_outage(self, verifier, pay, image_endpoint, upstream):
        upstream.facilitator_status = 503
        payment = verifier.decode(pay(image_endpoint))

        with pytest.raises(FacilitatorUnavailable):
            await verifier.verify(payment, image_endpoint)

    @pytest.mark.asyncio
    async def test_facilitator_client_error_is_rejection(self, verifier, pay, image_endpoint, upstream):
        upstream.facilitator_status = 400
        payment = verifier.decode(pay(image_endpoint))

        with pytest.raises(PaymentRejected):
            await verifier.verify(payment, image_endpoint)


class TestPermitSigner:

    def test_signature_recovers_buyer(self, config, image_endpoint, buyer):
        requirement = ChallengeBuilder(config).build(image_endpoint)
        proof = buyer.sign(requirement, nonce=3, deadline=2_000_000_000)

        typed_data = buyer._create_typed_data(requirement, FACILITATOR_SIGNER, 3, 2_000_000_000)
        recovered = Account.recover_message(
            encode_typed_data(full_message=typed_data),
            signature=proof.payload.signature,
        )
        assert recovered == BUYER_ADDRESS

    def test_permit_fields(self, config, image_endpoint, buyer):
        requirement = ChallengeBuilder(config).build(image_endpoint)
        proof = buyer.sign(requirement, nonce=0, deadline=2_000_000_000)
        authorization = proof.payload.authorization

        assert authorization.spender == FACILITATOR_SIGNER
        assert authorization.value == requirement.amount
        assert proof.payload.challenge.nonce == requirement.nonce
        assert proof.payload.resource == "/generate_image"

    def test_signs_decoded_402_body(self, config, image_endpoint, buyer):
        body = ChallengeBuilder(config).build(image_endpoint).model_dump(by_alias=True)
        requirement = PaymentRequirement.model_validate(json.loads(json.dumps(body)))

        proof = buyer.sign(requirement, nonce=0, deadline=2_000_000_000)
        assert proof.payload.pay_to == WALLET_ADDRESS

    def test_requires_facilitator_signer(self, image_endpoint, buyer):
        requirement = ChallengeBuilder(make_config()).build(image_endpoint)
        requirement.accepts[0].extra.pop("facilitatorSigner")
        with pytest.raises(ValueError):
            buyer.sign(requirement, nonce=0)
