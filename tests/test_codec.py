"""
Signed message codec tests
署名付きメッセージの署名・検証テスト
"""

import pytest
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from overlay_agent.ledger.secp256k1 import CURVE_ORDER
from overlay_agent.messaging.codec import SignedMessageCodec, signing_preimage


class TestSigningPreimage:

    def test_preimage_is_to_type_and_compact_json(self):
        assert signing_preimage("02ab", "ping", {"text": "hi", "n": 1}) == b'02abping{"text":"hi","n":1}'

    def test_non_ascii_is_kept_as_utf8(self):
        preimage = signing_preimage("02ab", "ping", {"text": "こんにちは"})
        assert "こんにちは".encode("utf-8") in preimage

    def test_key_order_matters(self):
        assert signing_preimage("k", "t", {"a": 1, "b": 2}) != signing_preimage("k", "t", {"b": 2, "a": 1})


class TestSignedMessageCodec:

    def test_signature_verifies_for_sender(self, ledger, peer_ledger):
        codec = SignedMessageCodec(ledger)
        payload = {"serviceId": "tell-joke", "input": {"topic": "cats"}}
        signature = codec.sign(peer_ledger.identity_key, "service-request", payload)

        result = SignedMessageCodec(peer_ledger).verify(
            ledger.identity_key, peer_ledger.identity_key, "service-request", payload, signature
        )
        assert result.valid is True
        assert result.reason is None

    def test_signature_is_low_s(self, ledger):
        signature = SignedMessageCodec(ledger).sign("02" + "00" * 32, "ping", {"text": "x"})
        _, s = decode_dss_signature(bytes.fromhex(signature))
        assert s <= CURVE_ORDER // 2

    def test_tampered_payload_is_rejected(self, ledger, peer_ledger):
        codec = SignedMessageCodec(ledger)
        signature = codec.sign(peer_ledger.identity_key, "ping", {"text": "hello"})

        result = codec.verify(ledger.identity_key, peer_ledger.identity_key, "ping", {"text": "hellO"}, signature)
        assert result.valid is False

    def test_bit_flipped_signature_is_rejected(self, ledger, peer_ledger):
        codec = SignedMessageCodec(ledger)
        signature = bytearray.fromhex(codec.sign(peer_ledger.identity_key, "ping", {"text": "hello"}))
        signature[-1] ^= 0x01

        result = codec.verify(ledger.identity_key, peer_ledger.identity_key, "ping", {"text": "hello"},
                              signature.hex())
        assert result.valid is False

    def test_wrong_sender_key_is_rejected(self, ledger, peer_ledger):
        codec = SignedMessageCodec(ledger)
        signature = codec.sign(peer_ledger.identity_key, "ping", {"text": "hello"})

        result = codec.verify(peer_ledger.identity_key, peer_ledger.identity_key, "ping", {"text": "hello"},
                              signature)
        assert result.valid is False

    def test_missing_signature(self, ledger):
        result = SignedMessageCodec(ledger).verify(ledger.identity_key, "02ab", "ping", {}, None)
        assert result.valid is False
        assert result.reason == "no signature"

    @pytest.mark.parametrize("signature", ["zz-not-hex", "3006020101020101"])
    def test_malformed_signature_never_raises(self, ledger, signature):
        result = SignedMessageCodec(ledger).verify(ledger.identity_key, "02ab", "ping", {}, signature)
        assert result.valid is False

    def test_invalid_sender_key_never_raises(self, ledger):
        codec = SignedMessageCodec(ledger)
        signature = codec.sign("02ab", "ping", {})
        result = codec.verify("not-a-key", "02ab", "ping", {}, signature)
        assert result.valid is False
        assert result.reason

    def test_envelope_shape(self, ledger, peer_ledger):
        envelope = SignedMessageCodec(ledger).envelope(ledger.identity_key, peer_ledger.identity_key, "ping",
                                                       {"text": "hi"})
        assert set(envelope) == {"from", "to", "type", "payload", "signature"}
        assert envelope["from"] == ledger.identity_key
