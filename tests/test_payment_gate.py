"""
PaymentGate tests
支払い検証と受け入れの順序付き拒否テスト
"""

import pytest

from overlay_agent.services.payment_gate import PaymentGate

SENDER = "02" + "cd" * 32


def claim(**overrides):
    payment = {
        "beef": "beefdata",
        "txid": "ab" * 32,
        "satoshis": 10,
        "derivationPrefix": "p",
        "derivationSuffix": "s",
        "senderIdentityKey": SENDER,
    }
    payment.update(overrides)
    return payment


@pytest.mark.asyncio
class TestPaymentGate:

    async def test_no_payment(self, config, wallet_provider):
        result = await PaymentGate(wallet_provider, config).verify_and_accept(None, 5, SENDER, "svc")
        assert result.accepted is False
        assert result.error == "no payment"
        assert wallet_provider.loads == 0

    async def test_payment_error_is_reported(self, config, wallet_provider):
        gate = PaymentGate(wallet_provider, config)
        result = await gate.verify_and_accept({"error": "insufficient funds"}, 5, SENDER, "svc")
        assert result.error == "insufficient funds"
        assert wallet_provider.loads == 0

    @pytest.mark.parametrize("missing", ["beef", "satoshis"])
    async def test_missing_fields(self, config, wallet_provider, missing):
        payment = claim()
        del payment[missing]
        result = await PaymentGate(wallet_provider, config).verify_and_accept(payment, 5, SENDER, "svc")
        assert result.error == "missing beef or satoshis"

    @pytest.mark.parametrize("satoshis", ["lots", "10", True, 2.5, [10]])
    async def test_malformed_amount(self, config, wallet_provider, satoshis):
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(satoshis=satoshis), 1, SENDER,
                                                                              "svc")
        assert result.accepted is False
        assert result.error == "invalid satoshis"
        assert wallet_provider.loads == 0

    async def test_integral_float_amount(self, config, wallet, wallet_provider):
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(satoshis=10.0), 5, SENDER, "svc")
        assert result.accepted is True
        assert result.satoshis == 10

    async def test_non_object_claim(self, config, wallet_provider):
        result = await PaymentGate(wallet_provider, config).verify_and_accept("beefdata", 5, SENDER, "svc")
        assert result.error == "invalid payment"
        assert wallet_provider.loads == 0

    async def test_below_price_floor(self, config, wallet_provider):
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(satoshis=4), 5, SENDER, "svc")
        assert result.accepted is False
        assert result.error == "insufficient payment: 4 < 5"
        assert wallet_provider.loads == 0

    async def test_verification_failure(self, config, wallet, wallet_provider):
        wallet.verify_result = {"valid": False, "errors": ["bad merkle root", "wrong output"]}
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(), 5, SENDER, "svc")

        assert result.error == "verification failed: bad merkle root, wrong output"
        assert wallet.accepted == []
        assert wallet.destroyed == 1

    async def test_settlement_exception_becomes_error(self, config, wallet, wallet_provider):
        wallet.accept_error = RuntimeError("derivation mismatch")
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(), 5, SENDER, "svc")

        assert result.accepted is False
        assert result.error == "derivation mismatch"
        assert wallet.destroyed == 1

    async def test_wallet_rejection(self, config, wallet, wallet_provider):
        wallet.accept_result = {"accepted": False}
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(), 5, SENDER, "svc")
        assert result.error == "wallet rejected payment"

    async def test_accepted_payment(self, config, wallet, wallet_provider):
        result = await PaymentGate(wallet_provider, config).verify_and_accept(claim(), 5, SENDER, "tell-joke")

        assert result.accepted is True
        assert result.wallet_accepted is True
        assert result.satoshis == 10
        assert result.txid == "ab" * 32
        assert wallet.accepted[0]["derivationPrefix"] == "p"
        assert wallet.accepted[0]["description"] == "Payment for tell-joke"
        assert wallet.destroyed == 1

    async def test_sender_key_fallback(self, config, wallet, wallet_provider):
        payment = claim()
        del payment["senderIdentityKey"]
        await PaymentGate(wallet_provider, config).verify_and_accept(payment, 5, SENDER, "svc")
        assert wallet.accepted[0]["senderIdentityKey"] == SENDER

    async def test_no_wallet_configured(self, config):
        result = await PaymentGate(None, config).verify_and_accept(claim(), 5, SENDER, "svc")
        assert result.accepted is False
        assert result.error == "no wallet configured"
