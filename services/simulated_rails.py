"""
Simulated Payout Rails (wire, crypto)

There is no banking or blockchain integration behind these rails yet. Both
adapters honour the PayoutAdapter contract and return deterministic
synthetic transaction ids derived from the attempt reference, so the same
attempt always maps to the same id and tests are reproducible.

Every response carries simulated=True and every call logs a warning:
a production deployment must replace these with a real bank payout API
(e.g. Stripe Payouts to an external account) and a real crypto provider.
"""

import hashlib
import logging
from decimal import Decimal

from database.models import PayoutMethod
from services.errors import ConfigurationError, FailureCode
from services.payout_adapters import PayoutDestination, PayoutResult, timestamp

logger = logging.getLogger(__name__)


def _digest(*parts: str) -> str:
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()


class WireTransferAdapter:
    """Bank wire / ACH rail (simulated)."""

    method = PayoutMethod.WIRE

    def payout(
        self,
        destination: PayoutDestination,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str = "",
    ) -> PayoutResult:
        if not destination.bank_routing_number or not destination.bank_account_number:
            return PayoutResult.failed(ConfigurationError(
                "Bank account details are missing", code=FailureCode.MISSING_PAYOUT_DETAILS,
            ))

        masked = destination.masked_account_number
        logger.warning("Bank Transfer: SIMULATED rail, no money moves. A real bank integration is required.")
        logger.info(f"Bank Transfer: Sending {amount:.2f} {currency.upper()} to account ending in {masked[-4:]}")

        transaction_id = f"WIRE-{_digest('wire', reference)[:16].upper()}"
        logger.info(f"Bank Transfer: SUCCESS - Transaction ID: {transaction_id}")

        return PayoutResult.ok(transaction_id, {
            "method": "wire",
            "routing_number": destination.bank_routing_number,
            "account_number": masked,
            "amount": f"{amount:.2f}",
            "currency": currency.upper(),
            "simulated": True,
            "note": "SIMULATED - a production deployment needs a bank payout API",
            "timestamp": timestamp(),
        })


class CryptoPayoutAdapter:
    """Cryptocurrency rail (simulated)."""

    method = PayoutMethod.CRYPTO

    def payout(
        self,
        destination: PayoutDestination,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str = "",
    ) -> PayoutResult:
        if not destination.crypto_wallet_address or not destination.crypto_network:
            return PayoutResult.failed(ConfigurationError(
                "Crypto wallet details are missing", code=FailureCode.MISSING_PAYOUT_DETAILS,
            ))

        logger.warning("Crypto Payout: SIMULATED rail, no transaction is broadcast. A real crypto provider is required.")
        logger.info(
            f"Crypto Payout: Sending {amount:.2f} {currency.upper()} equivalent to "
            f"{destination.crypto_wallet_address} on {destination.crypto_network}"
        )

        tx_hash = f"0x{_digest('crypto', reference, destination.crypto_wallet_address)}"
        logger.info(f"Crypto Payout: SUCCESS - TX Hash: {tx_hash}")

        return PayoutResult.ok(tx_hash, {
            "method": "crypto",
            "network": destination.crypto_network,
            "wallet_address": destination.crypto_wallet_address,
            "amount": f"{amount:.2f}",
            "currency": currency.upper(),
            "tx_hash": tx_hash,
            "simulated": True,
            "note": "SIMULATED - a production deployment needs a crypto payout provider",
            "timestamp": timestamp(),
        })
