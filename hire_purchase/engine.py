"""
Installment Engine

Wires storage, events, ledger, mandates, gateway, notifications, retry
scheduling and payment coordination into one object configured from
EngineConfig, and runs the periodic sweeps.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from .config import EngineConfig, get_config
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage, LockRegistry
from .events import EventDispatcher
from .gateway import GatewayAdapter, HttpGatewayAdapter, MockGateway
from .ledger import InstallmentLedger
from .mandates import MandateManager
from .notifications import NotificationEngine
from .payments import PaymentCoordinator
from .retry import RetryPolicyStore, RetryScheduler
from .polling import StatusPoller
from .logging_config import setup_logging

logger = logging.getLogger("hire_purchase.engine")


def create_storage(config: EngineConfig) -> StorageInterface:
    """memory:// gives InMemoryStorage, sqlite:///path gives SQLiteStorage"""
    if config.database_url.startswith("memory://"):
        return InMemoryStorage()
    path = config.sqlite_path
    if path is None:
        raise ValueError(f"Unsupported database_url: {config.database_url}")
    return SQLiteStorage(path)


def create_gateway(config: EngineConfig) -> GatewayAdapter:
    if not config.gateway_base_url:
        logger.warning("No gateway_base_url configured, using MockGateway")
        return MockGateway()
    return HttpGatewayAdapter(config.gateway_base_url, config.gateway_api_key or None, config.gateway_timeout)


class InstallmentEngine:
    """Installment & payment orchestration engine with all components initialized"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[GatewayAdapter] = None,
        notifier: Optional[NotificationEngine] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, self.config.log_format)

        self.storage = storage or create_storage(self.config)
        self.gateway = gateway or create_gateway(self.config)
        self.events = EventDispatcher()
        self.locks = LockRegistry()

        self.ledger = InstallmentLedger(
            self.storage, self.locks, self.config.default_threshold_days, self.events
        )
        self.mandates = MandateManager(
            self.storage, self.gateway, self.config.mandate_network_set,
            self.config.mandate_verification_minutes, self.config.mandate_validity_days,
            self.locks, self.events
        )
        self.notifier = notifier or NotificationEngine(
            self.storage,
            sms_api_url=self.config.sms_api_url,
            sms_api_key=self.config.sms_api_key,
            sms_sender_id=self.config.sms_sender_id,
            admin_webhook_url=self.config.admin_webhook_url
        )
        self.retry_policies = RetryPolicyStore(self.storage)
        self.retry_scheduler = RetryScheduler(
            self.retry_policies, self.notifier,
            admin_recipient_id=self.config.admin_recipient_id,
            event_dispatcher=self.events
        )
        self.payments = PaymentCoordinator(
            self.storage, self.ledger, self.mandates, self.gateway,
            self.config.payment_network_set, self.retry_scheduler, self.locks, self.events
        )
        self.retry_scheduler.set_coordinator(self.payments)

    def poller(self, interval: Optional[float] = None, timeout: Optional[float] = None) -> StatusPoller:
        return StatusPoller(
            self.payments,
            interval if interval is not None else self.config.poll_interval_seconds,
            timeout if timeout is not None else self.config.poll_timeout_seconds
        )

    def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run the periodic sweeps once: mandate expiry, due retries, default marking.

        Meant to be driven by an external scheduler (cron, worker loop).
        """
        now = now or datetime.now(timezone.utc)
        results = {
            "mandates": self.mandates.expire_due(now),
            "retries": self.retry_scheduler.run_due_retries(now),
            "defaults": self.ledger.mark_defaults(now.date()),
        }
        logger.info("Engine tick complete: %s", results)
        return results

    def close(self) -> None:
        self.gateway.close()
        self.storage.close()
