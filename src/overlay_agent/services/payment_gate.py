"""
Payment gate for paid service requests.

A payment claim is checked structurally and against the price floor before
the wallet is touched. The wallet is opened for the one verification and
settlement, then released.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import AgentConfig
from ..context import wallet_session
from ..ledger.interfaces import WalletProvider

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    """Outcome of :meth:`PaymentGate.verify_and_accept`"""
    accepted: bool
    txid: Optional[str] = None
    satoshis: int = 0
    wallet_accepted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "txid": self.txid,
            "satoshis": self.satoshis,
            "walletAccepted": self.wallet_accepted,
            "error": self.error,
        }


def whole_satoshis(value: Any) -> Optional[int]:
    """A claimed amount as an int, or None when it is not a whole number"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


class PaymentGate:
    """Validates payment claims and settles them through the wallet"""

    def __init__(self, wallet_provider: Optional[WalletProvider], config: AgentConfig):
        self.wallet_provider = wallet_provider
        self.config = config

    async def verify_and_accept(
        self,
        payment: Optional[Dict[str, Any]],
        min_sats: int,
        sender_key: str,
        service_id: str,
    ) -> PaymentResult:
        """Check a payment claim and, if sound, settle it.

        Rejections, in order: no claim; claim carries ``error``; claim lacks
        ``beef`` or ``satoshis``; ``satoshis`` not a whole number;
        ``satoshis < min_sats``; wallet
        verification fails; wallet settlement fails.

        Args:
            payment: Claim from the request payload
            min_sats: Price floor for the service
            sender_key: Requester identity key
            service_id: Service being paid for

        Returns:
            PaymentResult
        """
        if not payment:
            return PaymentResult(False, error="no payment")
        if not isinstance(payment, dict):
            return PaymentResult(False, error="invalid payment")
        if payment.get("error"):
            return PaymentResult(False, error=str(payment["error"]))
        if not payment.get("beef") or not payment.get("satoshis"):
            return PaymentResult(False, error="missing beef or satoshis")

        txid = payment.get("txid")
        satoshis = whole_satoshis(payment["satoshis"])
        if satoshis is None:
            return PaymentResult(False, txid=txid, error="invalid satoshis")
        if satoshis < min_sats:
            return PaymentResult(False, txid=txid, satoshis=satoshis,
                                 error=f"insufficient payment: {satoshis} < {min_sats}")
        if self.wallet_provider is None:
            return PaymentResult(False, txid=txid, satoshis=satoshis, error="no wallet configured")

        async with wallet_session(self.wallet_provider, self.config) as wallet:
            try:
                verification = await wallet.verify_payment(payment["beef"])
                if not verification.get("valid"):
                    errors = ", ".join(verification.get("errors") or [])
                    return PaymentResult(False, txid=txid, satoshis=satoshis,
                                         error=f"verification failed: {errors}")

                settlement = await wallet.accept_payment(
                    beef=payment["beef"],
                    derivation_prefix=payment.get("derivationPrefix"),
                    derivation_suffix=payment.get("derivationSuffix"),
                    sender_identity_key=payment.get("senderIdentityKey") or sender_key,
                    description=f"Payment for {service_id}",
                )
            except Exception as e:
                logger.warning(f"Payment settlement for {service_id} failed: {e}")
                return PaymentResult(False, txid=txid, satoshis=satoshis, error=str(e))

        if not settlement.get("accepted"):
            return PaymentResult(False, txid=txid, satoshis=satoshis, error="wallet rejected payment")

        logger.info(f"Accepted {satoshis} sats for {service_id} from {sender_key[:16]}... txid={txid}")
        return PaymentResult(True, txid=txid, satoshis=satoshis, wallet_accepted=True)
