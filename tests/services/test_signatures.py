from __future__ import annotations

import time

import pytest

from shipfree.services.billing.errors import ConfigurationError, InvalidSignature
from shipfree.services.billing.signatures import (
    LemonSqueezySignatureVerifier,
    StripeSignatureVerifier,
    compute_lemonsqueezy_signature,
)
from tests.helpers.billing import (
    LEMONSQUEEZY_SECRET,
    STRIPE_SECRET,
    lemonsqueezy_signature,
    stripe_signature,
)

PAYLOAD = b'{"id":"evt_1","type":"customer.subscription.created","created":1772366400}'


def _flip(data: bytes, index: int) -> bytes:
    mutated = bytearray(data)
    mutated[index] ^= 0x01
    return bytes(mutated)


def test_stripe_valid_signature_passes():
    StripeSignatureVerifier().verify(PAYLOAD, stripe_signature(PAYLOAD), STRIPE_SECRET)


@pytest.mark.parametrize("index", [0, 10, len(PAYLOAD) // 2, len(PAYLOAD) - 1])
def test_stripe_payload_mutation_fails(index):
    header = stripe_signature(PAYLOAD)
    with pytest.raises(InvalidSignature):
        StripeSignatureVerifier().verify(_flip(PAYLOAD, index), header, STRIPE_SECRET)


def test_stripe_signature_mutation_fails():
    header = stripe_signature(PAYLOAD)
    tampered = header[:-1] + ("0" if header[-1] != "0" else "1")
    with pytest.raises(InvalidSignature):
        StripeSignatureVerifier().verify(PAYLOAD, tampered, STRIPE_SECRET)


def test_stripe_wrong_secret_fails():
    header = stripe_signature(PAYLOAD, secret="whsec_other")
    with pytest.raises(InvalidSignature):
        StripeSignatureVerifier().verify(PAYLOAD, header, STRIPE_SECRET)


def test_stripe_timestamp_outside_tolerance_fails():
    header = stripe_signature(PAYLOAD, timestamp=int(time.time()) - 3600)
    with pytest.raises(InvalidSignature):
        StripeSignatureVerifier(tolerance_seconds=300).verify(PAYLOAD, header, STRIPE_SECRET)


def test_stripe_missing_header_is_invalid_signature():
    with pytest.raises(InvalidSignature):
        StripeSignatureVerifier().verify(PAYLOAD, None, STRIPE_SECRET)


def test_missing_secret_is_configuration_error():
    with pytest.raises(ConfigurationError):
        StripeSignatureVerifier().verify(PAYLOAD, stripe_signature(PAYLOAD), None)
    with pytest.raises(ConfigurationError):
        LemonSqueezySignatureVerifier().verify(PAYLOAD, "abc", "")


def test_lemonsqueezy_valid_signature_passes():
    LemonSqueezySignatureVerifier().verify(
        PAYLOAD, lemonsqueezy_signature(PAYLOAD), LEMONSQUEEZY_SECRET
    )


def test_lemonsqueezy_every_single_byte_payload_mutation_fails():
    header = lemonsqueezy_signature(PAYLOAD)
    verifier = LemonSqueezySignatureVerifier()
    for index in range(len(PAYLOAD)):
        with pytest.raises(InvalidSignature):
            verifier.verify(_flip(PAYLOAD, index), header, LEMONSQUEEZY_SECRET)


def test_lemonsqueezy_every_single_byte_signature_mutation_fails():
    header = lemonsqueezy_signature(PAYLOAD).encode()
    verifier = LemonSqueezySignatureVerifier()
    for index in range(len(header)):
        mutated = _flip(header, index).decode("latin-1")
        with pytest.raises(InvalidSignature):
            verifier.verify(PAYLOAD, mutated, LEMONSQUEEZY_SECRET)


def test_lemonsqueezy_uppercase_hex_is_rejected():
    header = compute_lemonsqueezy_signature(PAYLOAD, LEMONSQUEEZY_SECRET).upper()
    with pytest.raises(InvalidSignature):
        LemonSqueezySignatureVerifier().verify(PAYLOAD, header, LEMONSQUEEZY_SECRET)


def test_lemonsqueezy_missing_header_is_invalid_signature():
    with pytest.raises(InvalidSignature):
        LemonSqueezySignatureVerifier().verify(PAYLOAD, "", LEMONSQUEEZY_SECRET)
