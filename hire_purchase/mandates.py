"""
Mandate Management Module

Lifecycle of mobile-money direct-debit mandates (preapprovals): initiation
through the gateway, OTP or USSD verification, approval, expiry and
cancellation. PENDING is the only state a mandate can be verified from;
APPROVED mandates can still expire or be cancelled.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from enum import Enum
import logging
import re
import uuid

from .storage import StorageInterface, StorageRecord, LockRegistry, parse_datetime, format_datetime
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .gateway import GatewayAdapter, ChargeStatus, VerificationType
from .errors import (
    EntityNotFoundError, InvalidStateError, UnsupportedNetworkError,
    MandateNotUsableError, AlreadyTerminalError, ConcurrentModificationError
)
from .logging_config import log_action

logger = logging.getLogger("hire_purchase.mandates")


class MandateStatus(Enum):
    """Mandate states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


CLOSED_STATES = (MandateStatus.FAILED, MandateStatus.EXPIRED, MandateStatus.CANCELLED)

_MSISDN_DIGITS = re.compile(r"^\d+$")


def normalize_msisdn(msisdn: str, country_code: str = "233") -> str:
    """
    Normalise a mobile number to international form without '+'.

    0241234567, +233241234567 and 233241234567 all become 233241234567.
    """
    cleaned = msisdn.strip().replace(" ", "").replace("-", "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if not _MSISDN_DIGITS.match(cleaned):
        raise ValueError(f"Invalid MSISDN: {msisdn!r}")

    if cleaned.startswith("0") and len(cleaned) == 10:
        cleaned = country_code + cleaned[1:]
    if not (cleaned.startswith(country_code) and len(cleaned) == len(country_code) + 9):
        raise ValueError(f"Invalid MSISDN: {msisdn!r}")
    return cleaned


@dataclass
class Mandate(StorageRecord):
    """Customer consent for automatic debits on one network"""
    customer_id: str
    client_reference_id: str
    msisdn: str
    network: str
    status: MandateStatus
    expires_at: datetime
    verification_type: Optional[VerificationType] = None
    external_mandate_id: Optional[str] = None
    contract_id: Optional[str] = None
    approved_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    version: int = 0

    def is_usable(self, now: datetime) -> bool:
        return self.status == MandateStatus.APPROVED and now < self.expires_at


class MandateManager(EventPublisherMixin):
    """
    Manages direct-debit mandates
    """

    def __init__(
        self,
        storage: StorageInterface,
        gateway: GatewayAdapter,
        supported_networks: Iterable[str],
        verification_minutes: int = 30,
        validity_days: int = 365,
        locks: Optional[LockRegistry] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.gateway = gateway
        self.supported_networks = {n.upper() for n in supported_networks}
        self.verification_window = timedelta(minutes=verification_minutes)
        self.validity_period = timedelta(days=validity_days)
        self.locks = locks or LockRegistry()
        self.set_event_dispatcher(event_dispatcher)

        self.mandates_table = "mandates"

    def initiate(
        self,
        customer_id: str,
        msisdn: str,
        network: str,
        contract_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Mandate:
        """
        Request a new mandate from the gateway.

        A still-PENDING mandate for the same customer and network is superseded
        (CANCELLED) by the new one; a usable APPROVED mandate blocks initiation.

        Raises:
            UnsupportedNetworkError: network cannot do direct debit
            InvalidStateError: customer already holds a usable mandate on the network
        """
        network = network.upper()
        if network not in self.supported_networks:
            raise UnsupportedNetworkError(f"Network {network} does not support direct debit")
        msisdn = normalize_msisdn(msisdn)
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(f"mandate-holder:{customer_id}:{network}"):
            existing = self.list_mandates(customer_id=customer_id)
            existing = [m for m in existing if m.network == network]
            if any(m.is_usable(now) for m in existing):
                raise InvalidStateError(f"Customer {customer_id} already has an approved {network} mandate")

            reference = f"MDT-{uuid.uuid4().hex[:12].upper()}"
            initiation = self.gateway.initiate_mandate(msisdn, network, reference)

            for previous in existing:
                if previous.status == MandateStatus.PENDING:
                    self._transition(previous.id, MandateStatus.CANCELLED, now,
                                     failure_reason=f"Superseded by {reference}")

            mandate = Mandate(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                client_reference_id=reference,
                msisdn=msisdn,
                network=network,
                status=MandateStatus.PENDING,
                expires_at=now + self.verification_window,
                verification_type=initiation.verification_type,
                external_mandate_id=initiation.external_mandate_id,
                contract_id=contract_id
            )
            self._save_mandate(mandate)

        log_action(logger, "info", "Mandate initiated", action="initiate_mandate",
                   resource="mandate", mandate_id=mandate.id,
                   extra={"network": network, "verification_type": initiation.verification_type.value})
        self.publish_event(DomainEvent.MANDATE_INITIATED, "mandate", mandate.id, {
            "customer_id": customer_id,
            "client_reference_id": reference,
            "network": network,
            "verification_type": initiation.verification_type.value,
        })
        return mandate

    def verify(self, client_reference_id: str, otp_code: Optional[str] = None,
               now: Optional[datetime] = None) -> Mandate:
        """
        Verify a PENDING mandate.

        OTP mandates check the code with the gateway; USSD mandates ask the
        gateway whether the customer has answered the prompt yet and stay
        PENDING if not. Mandates no longer PENDING are returned unchanged.
        """
        now = now or datetime.now(timezone.utc)
        mandate = self.get_by_reference(client_reference_id)

        with self.locks.hold(f"mandate:{mandate.id}"):
            mandate = self.get_mandate(mandate.id)
            if mandate.status != MandateStatus.PENDING:
                return mandate
            if now >= mandate.expires_at:
                return self._transition(mandate.id, MandateStatus.EXPIRED, now,
                                        failure_reason="Verification window elapsed")

            if mandate.verification_type == VerificationType.USSD:
                result = self.gateway.check_mandate_status(client_reference_id)
                if result.status == ChargeStatus.SUCCESS:
                    return self.mark_approved(mandate.id, now)
                if result.status == ChargeStatus.FAILED:
                    return self.mark_failed(mandate.id, result.reason or "Rejected by customer", now)
                return mandate

            if not otp_code:
                raise ValueError("OTP code required for OTP verification")
            if self.gateway.verify_mandate_otp(client_reference_id, otp_code):
                return self.mark_approved(mandate.id, now)
            return self.mark_failed(mandate.id, "OTP verification failed", now)

    def mark_approved(self, mandate_id: str, now: Optional[datetime] = None) -> Mandate:
        """
        Approve a PENDING mandate; repeat approvals are no-ops.

        An approval arriving after the verification window expires the
        mandate instead.
        """
        now = now or datetime.now(timezone.utc)
        with self.locks.hold(f"mandate:{mandate_id}"):
            mandate = self.get_mandate(mandate_id)
            if mandate.status == MandateStatus.APPROVED:
                return mandate
            if mandate.status != MandateStatus.PENDING:
                raise AlreadyTerminalError(f"Mandate {mandate_id} is {mandate.status.value}")
            if now >= mandate.expires_at:
                return self._transition(mandate_id, MandateStatus.EXPIRED, now,
                                        failure_reason="Verification window elapsed")
            return self._transition(mandate_id, MandateStatus.APPROVED, now,
                                    approved_at=now, expires_at=now + self.validity_period)

    def mark_failed(self, mandate_id: str, reason: Optional[str] = None,
                    now: Optional[datetime] = None) -> Mandate:
        """Fail a PENDING mandate; repeat failures are no-ops"""
        now = now or datetime.now(timezone.utc)
        with self.locks.hold(f"mandate:{mandate_id}"):
            mandate = self.get_mandate(mandate_id)
            if mandate.status == MandateStatus.FAILED:
                return mandate
            if mandate.status != MandateStatus.PENDING:
                raise AlreadyTerminalError(f"Mandate {mandate_id} is {mandate.status.value}")
            return self._transition(mandate_id, MandateStatus.FAILED, now, failure_reason=reason)

    def handle_callback(self, client_reference_id: str, status: str,
                        reason: Optional[str] = None, now: Optional[datetime] = None) -> Mandate:
        """Apply an asynchronous gateway notification keyed by our reference"""
        mandate = self.get_by_reference(client_reference_id)
        status = status.upper()
        if status in ("APPROVED", "SUCCESS"):
            return self.mark_approved(mandate.id, now)
        if status in ("FAILED", "REJECTED"):
            return self.mark_failed(mandate.id, reason, now)
        if status == "PENDING":
            return mandate
        raise ValueError(f"Unknown mandate callback status: {status}")

    def expire(self, mandate_id: str, now: Optional[datetime] = None) -> Mandate:
        """Expire a PENDING or APPROVED mandate past its expiry; otherwise a no-op"""
        now = now or datetime.now(timezone.utc)
        with self.locks.hold(f"mandate:{mandate_id}"):
            mandate = self.get_mandate(mandate_id)
            if mandate.status not in (MandateStatus.PENDING, MandateStatus.APPROVED):
                return mandate
            if now < mandate.expires_at:
                return mandate
            return self._transition(mandate_id, MandateStatus.EXPIRED, now)

    def expire_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Sweep: expire every open mandate whose expiry has passed"""
        now = now or datetime.now(timezone.utc)
        results = {"mandates_checked": 0, "mandates_expired": 0}

        for mandate in self.list_mandates():
            if mandate.status not in (MandateStatus.PENDING, MandateStatus.APPROVED):
                continue
            results["mandates_checked"] += 1
            if now < mandate.expires_at:
                continue
            try:
                if self.expire(mandate.id, now).status == MandateStatus.EXPIRED:
                    results["mandates_expired"] += 1
            except ConcurrentModificationError as e:
                logger.warning("Skipped expiring mandate %s: %s", mandate.id, e)

        return results

    def cancel(self, mandate_id: str, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> Mandate:
        """Cancel a PENDING or APPROVED mandate"""
        now = now or datetime.now(timezone.utc)
        with self.locks.hold(f"mandate:{mandate_id}"):
            mandate = self.get_mandate(mandate_id)
            if mandate.status in CLOSED_STATES:
                raise AlreadyTerminalError(f"Mandate {mandate_id} is already {mandate.status.value}")
            return self._transition(mandate_id, MandateStatus.CANCELLED, now, failure_reason=reason)

    def ensure_usable(self, mandate_id: str, now: Optional[datetime] = None) -> Mandate:
        """Return the mandate if it can be charged right now"""
        now = now or datetime.now(timezone.utc)
        mandate = self.get_mandate(mandate_id)
        if mandate.status != MandateStatus.APPROVED:
            raise MandateNotUsableError(f"Mandate {mandate_id} is {mandate.status.value}")
        if now >= mandate.expires_at:
            raise MandateNotUsableError(f"Mandate {mandate_id} expired at {mandate.expires_at.isoformat()}")
        return mandate

    # Queries

    def get_mandate(self, mandate_id: str) -> Mandate:
        data = self.storage.load(self.mandates_table, mandate_id)
        if not data:
            raise EntityNotFoundError(f"Mandate {mandate_id} not found")
        return self._mandate_from_dict(data)

    def get_by_reference(self, client_reference_id: str) -> Mandate:
        matches = self.storage.find(self.mandates_table, {"client_reference_id": client_reference_id})
        if not matches:
            raise EntityNotFoundError(f"Mandate with reference {client_reference_id} not found")
        return self._mandate_from_dict(matches[0])

    def list_mandates(
        self,
        customer_id: Optional[str] = None,
        status: Optional[MandateStatus] = None
    ) -> List[Mandate]:
        filters = {}
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status.value
        mandates = [self._mandate_from_dict(d) for d in self.storage.find(self.mandates_table, filters)]
        mandates.sort(key=lambda m: m.created_at)
        return mandates

    def status_summary(self) -> Dict[str, int]:
        """Counts per status for the preapproval report"""
        summary = {"total": 0}
        summary.update({status.value.lower(): 0 for status in MandateStatus})
        for mandate in self.list_mandates():
            summary["total"] += 1
            summary[mandate.status.value.lower()] += 1
        return summary

    # Internals

    def _transition(self, mandate_id: str, status: MandateStatus, now: datetime, **changes) -> Mandate:
        mandate = self.get_mandate(mandate_id)
        previous = mandate.status
        mandate.status = status
        mandate.updated_at = now
        for name, value in changes.items():
            setattr(mandate, name, value)
        self._save_mandate(mandate)

        log_action(logger, "info", f"Mandate {previous.value} -> {status.value}",
                   action="mandate_transition", resource="mandate", mandate_id=mandate_id,
                   extra={"reason": mandate.failure_reason} if mandate.failure_reason else None)

        event = {
            MandateStatus.APPROVED: DomainEvent.MANDATE_APPROVED,
            MandateStatus.FAILED: DomainEvent.MANDATE_FAILED,
            MandateStatus.EXPIRED: DomainEvent.MANDATE_EXPIRED,
            MandateStatus.CANCELLED: DomainEvent.MANDATE_CANCELLED,
        }.get(status)
        if event:
            self.publish_event(event, "mandate", mandate_id, {
                "client_reference_id": mandate.client_reference_id,
                "customer_id": mandate.customer_id,
                "previous_status": previous.value,
                "reason": mandate.failure_reason,
            })
        return mandate

    def _save_mandate(self, mandate: Mandate) -> None:
        expected = mandate.version
        mandate.version = expected + 1
        if not self.storage.compare_and_save(
            self.mandates_table, mandate.id, self._mandate_to_dict(mandate), expected
        ):
            mandate.version = expected
            raise ConcurrentModificationError(f"Mandate {mandate.id} was modified concurrently")

    def _mandate_to_dict(self, mandate: Mandate) -> Dict:
        result = mandate.base_dict()
        result.update({
            'customer_id': mandate.customer_id,
            'client_reference_id': mandate.client_reference_id,
            'msisdn': mandate.msisdn,
            'network': mandate.network,
            'status': mandate.status.value,
            'expires_at': mandate.expires_at.isoformat(),
            'verification_type': mandate.verification_type.value if mandate.verification_type else None,
            'external_mandate_id': mandate.external_mandate_id,
            'contract_id': mandate.contract_id,
            'approved_at': format_datetime(mandate.approved_at),
            'failure_reason': mandate.failure_reason,
            'version': mandate.version,
        })
        return result

    def _mandate_from_dict(self, data: Dict) -> Mandate:
        return Mandate(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            client_reference_id=data['client_reference_id'],
            msisdn=data['msisdn'],
            network=data['network'],
            status=MandateStatus(data['status']),
            expires_at=datetime.fromisoformat(data['expires_at']),
            verification_type=VerificationType(data['verification_type']) if data.get('verification_type') else None,
            external_mandate_id=data.get('external_mandate_id'),
            contract_id=data.get('contract_id'),
            approved_at=parse_datetime(data.get('approved_at')),
            failure_reason=data.get('failure_reason'),
            version=data.get('version', 0),
        )
