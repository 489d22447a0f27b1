"""
Retry Scheduler Module

Decides whether and when a failed payment attempt is retried, runs the
periodic retry sweep and the manual retry actions, and signals the notifier
about failures. Policy is a durable record read as an immutable snapshot:
once per sweep tick, or from the cache for decisions made on resolution.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import logging
import threading

from .storage import StorageInterface
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .errors import EngineError, InvalidStateError, MandateNotUsableError, RetryExhaustedError
from .logging_config import log_action
from .notifications import NotificationChannel, NotificationType
from .payments import AttemptStatus, PaymentAttempt

logger = logging.getLogger("hire_purchase.retry")

DEFAULT_FAILURE_SMS = (
    "Dear customer, your payment of {amount} for contract {contract_number} failed ({reason}). "
    "{retry_message}"
)


def parse_schedule(value: Union[str, Iterable[int], None]) -> Tuple[int, ...]:
    """'1,3,7' -> (1, 3, 7); blanks are ignored"""
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(int(part.strip()) for part in value.split(",") if part.strip())
        except ValueError:
            raise ValueError(f"Invalid retry schedule: {value!r}")
    return tuple(int(day) for day in value)


@dataclass(frozen=True)
class RetryPolicy:
    """Process-wide retry configuration snapshot"""
    enable_auto_retry: bool = True
    max_retry_attempts: int = 3
    retry_interval_hours: int = 24
    retry_schedule: Tuple[int, ...] = (1, 3, 7)
    notify_on_failure: bool = True
    notify_customer_on_failure: bool = True
    send_sms_on_failure: bool = False
    failure_sms_template: str = ""

    def __post_init__(self):
        object.__setattr__(self, 'retry_schedule', parse_schedule(self.retry_schedule))
        if not 0 <= self.max_retry_attempts <= 10:
            raise ValueError("max_retry_attempts must be between 0 and 10")
        if not 1 <= self.retry_interval_hours <= 168:
            raise ValueError("retry_interval_hours must be between 1 and 168")
        for day in self.retry_schedule:
            if not 0 <= day <= 30:
                raise ValueError("retry_schedule offsets must be between 0 and 30 days")

    def delay_for(self, retry_count: int) -> timedelta:
        """Wait before the next try, indexed by retries already made"""
        if not self.retry_schedule:
            return timedelta(hours=self.retry_interval_hours)
        index = min(retry_count, len(self.retry_schedule) - 1)
        return timedelta(days=self.retry_schedule[index])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enable_auto_retry': self.enable_auto_retry,
            'max_retry_attempts': self.max_retry_attempts,
            'retry_interval_hours': self.retry_interval_hours,
            'retry_schedule': ",".join(str(day) for day in self.retry_schedule),
            'notify_on_failure': self.notify_on_failure,
            'notify_customer_on_failure': self.notify_customer_on_failure,
            'send_sms_on_failure': self.send_sms_on_failure,
            'failure_sms_template': self.failure_sms_template,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetryPolicy':
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**fields)


class RetryPolicyStore:
    """Durable RetryPolicy with a cached snapshot"""

    POLICY_ID = "default"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "retry_policy"
        self._policy: Optional[RetryPolicy] = None
        self._lock = threading.RLock()

    def get_policy(self) -> RetryPolicy:
        with self._lock:
            if self._policy is None:
                self._policy = self._load()
            return self._policy

    def reload(self) -> RetryPolicy:
        """Re-read the policy from storage"""
        with self._lock:
            self._policy = self._load()
            return self._policy

    def update_policy(self, **changes) -> RetryPolicy:
        """Validate and persist a changed policy; applies to decisions made from now on"""
        with self._lock:
            policy = replace(self.get_policy(), **changes)
            self._store(policy)
            logger.info("Retry policy updated: %s", sorted(changes))
            return policy

    def reset_policy(self) -> RetryPolicy:
        with self._lock:
            policy = RetryPolicy()
            self._store(policy)
            return policy

    def _load(self) -> RetryPolicy:
        data = self.storage.load(self.table, self.POLICY_ID)
        if not data:
            return RetryPolicy()
        return RetryPolicy.from_dict(data)

    def _store(self, policy: RetryPolicy) -> None:
        data = policy.to_dict()
        data.update({
            'id': self.POLICY_ID,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        })
        self.storage.save(self.table, self.POLICY_ID, data)
        self._policy = policy


@dataclass
class RetryDecision:
    """Outcome of evaluating a failure against a policy"""
    will_retry: bool
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    reason: str  # scheduled, disabled, exhausted or mandate_unusable
    policy: RetryPolicy


class RetryScheduler(EventPublisherMixin):
    """
    Drives automatic and manual retries of failed payment attempts
    """

    def __init__(
        self,
        policy_store: RetryPolicyStore,
        notifier=None,
        coordinator=None,
        admin_recipient_id: str = "admin",
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.policy_store = policy_store
        self.notifier = notifier
        self.coordinator = coordinator
        self.admin_recipient_id = admin_recipient_id
        self.set_event_dispatcher(event_dispatcher)

    def set_coordinator(self, coordinator) -> None:
        self.coordinator = coordinator

    def evaluate_failure(self, attempt, failed_at: datetime, policy: Optional[RetryPolicy] = None) -> RetryDecision:
        """
        Decide the next step for a freshly FAILED attempt and record it on the
        attempt (not persisted here; the coordinator saves it with the failure).
        """
        policy = policy or self.policy_store.get_policy()
        attempt.max_retries = policy.max_retry_attempts

        if not policy.enable_auto_retry:
            reason = "disabled"
        elif attempt.retry_count >= policy.max_retry_attempts:
            reason = "exhausted"
        else:
            reason = "scheduled"

        if reason == "scheduled":
            attempt.is_auto_retry_enabled = True
            attempt.next_retry_at = failed_at + policy.delay_for(attempt.retry_count)
        else:
            attempt.is_auto_retry_enabled = False
            attempt.next_retry_at = None

        return RetryDecision(
            will_retry=reason == "scheduled",
            retry_count=attempt.retry_count,
            max_retries=policy.max_retry_attempts,
            next_retry_at=attempt.next_retry_at,
            reason=reason,
            policy=policy
        )

    def after_failure(self, attempt, decision: RetryDecision) -> None:
        """Publish the decision and send failure notifications"""
        if decision.will_retry:
            log_action(logger, "info", "Retry scheduled", action="schedule_retry",
                       resource="payment_attempt", attempt_id=attempt.id,
                       extra={"next_retry_at": decision.next_retry_at.isoformat(),
                              "retry_count": decision.retry_count})
            self.publish_event(DomainEvent.PAYMENT_RETRY_SCHEDULED, "payment_attempt", attempt.id, {
                "contract_id": attempt.contract_id,
                "retry_count": decision.retry_count,
                "next_retry_at": decision.next_retry_at.isoformat(),
            })
        elif decision.reason == "exhausted":
            log_action(logger, "warning", "Retries exhausted", action="schedule_retry",
                       resource="payment_attempt", attempt_id=attempt.id,
                       extra={"retry_count": decision.retry_count, "max_retries": decision.max_retries})
            self.publish_event(DomainEvent.PAYMENT_RETRY_EXHAUSTED, "payment_attempt", attempt.id, {
                "contract_id": attempt.contract_id,
                "root_attempt_id": attempt.root_attempt_id or attempt.id,
                "retry_count": decision.retry_count,
            })
        self.notify_failure(attempt, decision)

    def notify_failure(self, attempt, decision: RetryDecision) -> Dict[str, bool]:
        """
        Send the failure notifications the policy asks for.

        Notifier problems are logged and never propagate.
        """
        sent = {"admin": False, "customer": False, "sms": False}
        if self.notifier is None:
            return sent

        policy = decision.policy
        data = {
            "attempt_id": attempt.id,
            "contract_id": attempt.contract_id,
            "customer_id": attempt.customer_id,
            "amount": attempt.amount.to_string(),
            "reason": attempt.failure_reason or "unknown",
            "retry_count": attempt.retry_count,
            "max_retries": decision.max_retries,
            "next_retry_at": decision.next_retry_at.strftime("%Y-%m-%d %H:%M") if decision.next_retry_at else "",
            "retry_message": (
                f"We will try again on {decision.next_retry_at:%Y-%m-%d}." if decision.will_retry
                else "Please make the payment manually."
            ),
            "contract_number": attempt.contract_id,
        }
        contract_number = self._contract_number(attempt.contract_id)
        if contract_number:
            data["contract_number"] = contract_number

        if policy.notify_on_failure:
            sent["admin"] = self._notify("admin", NotificationType.PAYMENT_FAILURE_ALERT,
                                         self.admin_recipient_id, data,
                                         [NotificationChannel.IN_APP, NotificationChannel.WEBHOOK])
        if policy.notify_customer_on_failure:
            sent["customer"] = self._notify("customer", NotificationType.PAYMENT_FAILED,
                                            attempt.customer_id, data, [NotificationChannel.IN_APP])
        if policy.send_sms_on_failure and attempt.msisdn:
            sent["sms"] = self._notify("sms", NotificationType.PAYMENT_FAILED, attempt.customer_id, data,
                                       [NotificationChannel.SMS], recipient_address=attempt.msisdn,
                                       body_template=policy.failure_sms_template or DEFAULT_FAILURE_SMS)
        return sent

    def _notify(self, kind: str, notification_type, recipient_id: str, data: Dict[str, Any],
                channels, **options) -> bool:
        try:
            return bool(self.notifier.notify(notification_type, recipient_id, data, channels=channels, **options))
        except Exception:
            logger.exception("Failed to send %s failure notification for attempt %s", kind, data["attempt_id"])
            return False

    def _contract_number(self, contract_id: str) -> Optional[str]:
        if self.coordinator is None:
            return None
        try:
            return self.coordinator.ledger.get_contract(contract_id).contract_number
        except EngineError:
            return None

    def _notify_chain_closed(self, attempt_id: str, policy: RetryPolicy) -> None:
        attempt = self.coordinator.get_attempt(attempt_id)
        self.notify_failure(attempt, RetryDecision(
            will_retry=False,
            retry_count=attempt.retry_count,
            max_retries=attempt.max_retries,
            next_retry_at=None,
            reason="mandate_unusable",
            policy=policy
        ))

    # Sweep

    def due_for_retry(self, now: Optional[datetime] = None) -> List[str]:
        """Ids of failed attempts whose next retry time has come"""
        now = now or datetime.now(timezone.utc)
        return [
            attempt.id for attempt in self._failed_chain_heads()
            if attempt.is_auto_retry_enabled
            and attempt.next_retry_at is not None
            and attempt.next_retry_at <= now
            and attempt.retry_count < attempt.max_retries
        ]

    def run_due_retries(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Periodic tick: re-read the policy, then retry every due attempt.

        Per-attempt errors are logged and counted; the sweep carries on.
        """
        now = now or datetime.now(timezone.utc)
        policy = self.policy_store.reload()
        results = {"due": 0, "retried": 0, "closed": 0, "errors": 0}

        if not policy.enable_auto_retry:
            logger.info("Automatic retries disabled, sweep skipped")
            return results

        for attempt_id in self.due_for_retry(now):
            results["due"] += 1
            try:
                child = self.coordinator.retry_attempt(attempt_id, now)
            except MandateNotUsableError as e:
                results["closed"] += 1
                logger.warning("Retry chain of attempt %s closed: %s", attempt_id, e)
                self._notify_chain_closed(attempt_id, policy)
                continue
            except EngineError as e:
                results["errors"] += 1
                logger.warning("Retry of attempt %s failed: %s", attempt_id, e)
                continue
            if child is None:
                results["closed"] += 1
            else:
                results["retried"] += 1

        return results

    # Manual retries

    def retry_now(self, attempt_id: str, now: Optional[datetime] = None):
        """
        Retry a failed attempt immediately, ignoring its scheduled time.

        Raises:
            InvalidStateError: attempt is not FAILED or was already retried
            RetryExhaustedError: attempt already used every retry allowed
        """
        attempt = self.coordinator.get_attempt(attempt_id)
        if attempt.status != AttemptStatus.FAILED or attempt.superseded_by:
            raise InvalidStateError(f"Attempt {attempt_id} cannot be retried")
        policy = self.policy_store.get_policy()
        if attempt.retry_count >= policy.max_retry_attempts:
            raise RetryExhaustedError(
                f"Attempt {attempt_id} has used {attempt.retry_count} of {policy.max_retry_attempts} retries"
            )
        return self.coordinator.retry_attempt(attempt_id, now)

    def retry_multiple(self, attempt_ids: Iterable[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Retry a selection of failed attempts; per-attempt errors are collected"""
        results: Dict[str, Any] = {"requested": 0, "retried": 0, "closed": 0, "errors": {}}
        for attempt_id in attempt_ids:
            results["requested"] += 1
            try:
                child = self.retry_now(attempt_id, now)
            except EngineError as e:
                results["errors"][attempt_id] = str(e)
                continue
            if child is None:
                results["closed"] += 1
            else:
                results["retried"] += 1
        return results

    def retry_all(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Retry every failed attempt that still has retries left"""
        max_retries = self.policy_store.get_policy().max_retry_attempts
        eligible = [a.id for a in self._failed_chain_heads() if a.retry_count < max_retries]
        return self.retry_multiple(eligible, now)

    def _failed_chain_heads(self) -> List[PaymentAttempt]:
        return [
            attempt for attempt in self.coordinator.list_attempts(status=AttemptStatus.FAILED)
            if attempt.superseded_by is None
        ]
