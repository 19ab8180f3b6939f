"""
Payout provider wiring.

Builds every provider client and adapter once, from validated settings, at
process start (FastAPI startup, Celery worker init). Missing credentials
fail here, never on the first payout.

In sandbox mode a provider without credentials is simulated; the e-transfer
rail is always simulated in sandbox mode so no real transfer is made.

Per request / per task, build_payout_services() binds the engine services
to a database session around the long-lived providers.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.orm import Session

from database.ledger import PaymentLedger
from database.models import PayoutMethod
from services.config import PayoutSettings
from services.disputes import DisputeService
from services.fee_calculator import FeeCalculator
from services.notifications import DatabaseNotificationService, SafeNotifier
from services.payment_processor import PaymentProcessor
from services.payout_adapters import AccountTransferAdapter, PayoutAdapter, PayPalPayoutAdapter
from services.paypal_payouts import PayPalPayoutsClient
from services.reconciliation import ReconciliationService
from services.retainer_scheduler import RetainerPaymentScheduler
from services.simulated_rails import CryptoPayoutAdapter, WireTransferAdapter
from services.stripe_connect import ConnectedAccountService, build_stripe_client

logger = logging.getLogger(__name__)


@dataclass
class PayoutProviders:
    settings: PayoutSettings
    connect: ConnectedAccountService
    adapters: Dict[PayoutMethod, PayoutAdapter] = field(default_factory=dict)
    paypal_client: Optional[PayPalPayoutsClient] = None

    def adapter_for(self, method: PayoutMethod) -> Optional[PayoutAdapter]:
        return self.adapters.get(PayoutMethod(method))


def build_payout_providers(settings: Optional[PayoutSettings] = None) -> PayoutProviders:
    """
    Validate settings and construct all payout rails.

    Raises:
        ConfigurationError: credentials missing outside sandbox mode
    """
    settings = settings or PayoutSettings.from_env()
    settings.validate()

    paypal_client = None
    if settings.paypal_configured:
        paypal_client = PayPalPayoutsClient(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            mode=settings.paypal_mode,
            timeout=settings.provider_timeout_seconds,
        )
        logger.info(f"PayPal Payouts initialized ({settings.paypal_mode} mode)")
    else:
        logger.warning("PayPal credentials not configured - PayPal payouts will be simulated (sandbox mode)")

    stripe_client = None
    if settings.stripe_configured:
        stripe_client = build_stripe_client(settings.stripe_secret_key, settings.provider_timeout_seconds)
        logger.info("Stripe Connect initialized")
    else:
        logger.warning("Stripe credentials not configured - Stripe Connect will be simulated (sandbox mode)")

    connect = ConnectedAccountService(stripe_client, sandbox_mode=settings.sandbox_mode)

    adapters: Dict[PayoutMethod, PayoutAdapter] = {
        PayoutMethod.PAYPAL: PayPalPayoutAdapter(paypal_client, simulate=paypal_client is None),
        PayoutMethod.ETRANSFER: AccountTransferAdapter(connect),
        PayoutMethod.WIRE: WireTransferAdapter(),
        PayoutMethod.CRYPTO: CryptoPayoutAdapter(),
    }

    return PayoutProviders(settings=settings, connect=connect, adapters=adapters, paypal_client=paypal_client)


@dataclass
class PayoutServices:
    """Session-bound engine services sharing one ledger and notifier."""
    ledger: PaymentLedger
    notifier: SafeNotifier
    fee_calculator: FeeCalculator
    processor: PaymentProcessor
    scheduler: RetainerPaymentScheduler
    disputes: DisputeService
    reconciliation: ReconciliationService


def build_payout_services(db: Session, providers: PayoutProviders) -> PayoutServices:
    """Wire the engine for one database session (one request or one task run)."""
    settings = providers.settings
    ledger = PaymentLedger(db)
    notifier = SafeNotifier(DatabaseNotificationService(db), operator_user_ids=settings.operator_user_ids)
    fee_calculator = FeeCalculator(ledger)
    processor = PaymentProcessor(ledger, providers.adapters, notifier, sandbox_mode=settings.sandbox_mode)
    return PayoutServices(
        ledger=ledger,
        notifier=notifier,
        fee_calculator=fee_calculator,
        processor=processor,
        scheduler=RetainerPaymentScheduler(ledger, processor, fee_calculator),
        disputes=DisputeService(ledger, notifier),
        reconciliation=ReconciliationService(
            ledger, providers.connect, notifier, stale_after_minutes=settings.stale_after_minutes,
        ),
    )
