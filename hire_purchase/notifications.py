"""
Notification Engine Module

Sends payment reminders and payment-failure alerts over SMS, webhook and
in-app channels. Sending never raises: delivery problems are recorded on the
notification and logged.
"""

from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import logging
import uuid
import requests
from abc import ABC, abstractmethod

from .storage import StorageInterface, StorageRecord, parse_datetime, format_datetime
from .ledger import InstallmentLedger, ContractStatus, InstallmentStatus

logger = logging.getLogger("hire_purchase.notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    SMS = "sms"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class NotificationPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationType(Enum):
    """Types of notifications"""
    PAYMENT_DUE = "payment_due"
    PAYMENT_OVERDUE = "payment_overdue"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_FAILURE_ALERT = "payment_failure_alert"  # to administrators


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"


class ReminderFrequency(Enum):
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


DEFAULT_TEMPLATES = {
    NotificationType.PAYMENT_DUE: (
        "Payment Due",
        "Your installment {sequence_number} of {amount} for contract {contract_number} is due on {due_date}."
    ),
    NotificationType.PAYMENT_OVERDUE: (
        "Payment Overdue",
        "Your installment {sequence_number} of {amount} for contract {contract_number} "
        "was due on {due_date} and is {days_overdue} days overdue."
    ),
    NotificationType.PAYMENT_FAILED: (
        "Payment Failed",
        "Your payment of {amount} for contract {contract_number} failed: {reason}. {retry_message}"
    ),
    NotificationType.PAYMENT_FAILURE_ALERT: (
        "Payment Failure: {contract_number}",
        "Attempt {attempt_id} for {amount} on contract {contract_number} failed ({reason}). "
        "Retries used: {retry_count}/{max_retries}. Next retry: {next_retry_at}."
    ),
}


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    channel: NotificationChannel
    priority: NotificationPriority
    recipient_id: str
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationSettings:
    """Reminder settings, stored as a single record"""
    days_before_due: int = 3
    send_sms: bool = True
    reminder_frequency: ReminderFrequency = ReminderFrequency.ONCE
    enable_overdue_reminders: bool = True
    overdue_reminder_frequency: ReminderFrequency = ReminderFrequency.DAILY
    sms_template: str = ""

    def __post_init__(self):
        if self.days_before_due < 0:
            raise ValueError("days_before_due cannot be negative")
        if self.overdue_reminder_frequency == ReminderFrequency.ONCE:
            raise ValueError("Overdue reminders repeat DAILY or WEEKLY")


class ChannelProvider(ABC):
    """Delivers a notification on one channel"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Returns True if the channel accepted the notification"""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the log instead of delivering them"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def send(self, notification: Notification) -> bool:
        self.log.info("%s to %s: %s | %s", notification.channel.value.upper(),
                      notification.recipient_address, notification.subject, notification.body[:100])
        return True


class SMSChannelProvider(ChannelProvider):
    """SMS delivery through an HTTP SMS API"""

    def __init__(self, api_url: str, api_key: str = "", sender_id: str = "HirePurchase", timeout: int = 10):
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                self.api_url,
                json={
                    "from": self.sender_id,
                    "to": notification.recipient_address,
                    "content": notification.body,
                    "reference": notification.id,
                },
                headers=headers,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning("SMS send failed: %s", e)
            return False
        return 200 <= response.status_code < 300


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "priority": notification.priority.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata,
        }
        try:
            response = requests.post(
                notification.recipient_address,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning("Webhook send failed: %s", e)
            return False
        return response.status_code == 200


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "in_app_notifications"

    def send(self, notification: Notification) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        record_id = str(uuid.uuid4())
        self.storage.save(self.table, record_id, {
            "id": record_id,
            "created_at": now,
            "updated_at": now,
            "notification_id": notification.id,
            "recipient_id": notification.recipient_id,
            "type": notification.notification_type.value,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
        })
        return True


class NotificationEngine:
    """Renders, sends and records notifications"""

    SETTINGS_ID = "default"

    def __init__(
        self,
        storage: StorageInterface,
        sms_api_url: str = "",
        sms_api_key: str = "",
        sms_sender_id: str = "HirePurchase",
        admin_webhook_url: str = ""
    ):
        self.storage = storage
        self.admin_webhook_url = admin_webhook_url

        self.notifications_table = "notifications"
        self.settings_table = "notification_settings"
        self.reminders_table = "reminder_log"

        log_provider = LogChannelProvider()
        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            channel: log_provider for channel in NotificationChannel
        }
        self.providers[NotificationChannel.IN_APP] = InAppChannelProvider(storage)
        if sms_api_url:
            self.providers[NotificationChannel.SMS] = SMSChannelProvider(sms_api_url, sms_api_key, sms_sender_id)
        if admin_webhook_url:
            self.providers[NotificationChannel.WEBHOOK] = WebhookChannelProvider()

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        self.providers[channel] = provider

    # Sending

    def notify(
        self,
        notification_type: NotificationType,
        recipient_id: str,
        data: Dict[str, Any],
        channels: Optional[List[NotificationChannel]] = None,
        recipient_address: Optional[str] = None,
        body_template: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM
    ) -> List[str]:
        """
        Send a notification on each channel.

        Args:
            notification_type: What happened
            recipient_id: Customer id, or the admin recipient id
            data: Values for the template placeholders
            channels: Defaults to in-app only
            recipient_address: Phone number or URL; derived per channel if omitted
            body_template: Overrides the default body (e.g. a configured SMS template)

        Returns:
            Ids of notifications that were accepted by their channel
        """
        sent = []
        for channel in channels or [NotificationChannel.IN_APP]:
            notification_id = self._send_via_channel(
                notification_type, channel, recipient_id, data, recipient_address, body_template, priority
            )
            if notification_id:
                sent.append(notification_id)
        return sent

    def _send_via_channel(
        self,
        notification_type: NotificationType,
        channel: NotificationChannel,
        recipient_id: str,
        data: Dict[str, Any],
        recipient_address: Optional[str],
        body_template: Optional[str],
        priority: NotificationPriority
    ) -> Optional[str]:
        subject_template, default_body = DEFAULT_TEMPLATES[notification_type]
        try:
            subject = subject_template.format(**data)
            body = (body_template or default_body).format(**data)
        except (KeyError, IndexError, ValueError) as e:
            logger.error("Template rendering failed for %s: %s", notification_type.value, e)
            return None

        address = recipient_address or self._get_recipient_address(recipient_id, channel)
        if not address:
            logger.debug("No %s address for recipient %s", channel.value, recipient_id)
            return None

        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            channel=channel,
            priority=priority,
            recipient_id=recipient_id,
            recipient_address=address,
            subject=subject,
            body=body,
            metadata={k: str(v) for k, v in data.items()}
        )

        try:
            success = self.providers[channel].send(notification)
        except Exception as e:
            logger.exception("Provider for %s raised", channel.value)
            success = False
            notification.failed_reason = str(e)

        if success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = now
        else:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = notification.failed_reason or "Provider send failed"

        self.storage.save(self.notifications_table, notification.id, self._notification_to_dict(notification))
        return notification.id if success else None

    def _get_recipient_address(self, recipient_id: str, channel: NotificationChannel) -> Optional[str]:
        if channel == NotificationChannel.WEBHOOK:
            return self.admin_webhook_url or None
        if channel == NotificationChannel.IN_APP:
            return recipient_id
        return None

    # Reminders

    def get_settings(self) -> NotificationSettings:
        data = self.storage.load(self.settings_table, self.SETTINGS_ID)
        if not data:
            return NotificationSettings()
        return NotificationSettings(
            days_before_due=data['days_before_due'],
            send_sms=data['send_sms'],
            reminder_frequency=ReminderFrequency(data['reminder_frequency']),
            enable_overdue_reminders=data['enable_overdue_reminders'],
            overdue_reminder_frequency=ReminderFrequency(data['overdue_reminder_frequency']),
            sms_template=data.get('sms_template', ""),
        )

    def update_settings(self, **changes) -> NotificationSettings:
        settings = replace(self.get_settings(), **changes)
        self.storage.save(self.settings_table, self.SETTINGS_ID, {
            'id': self.SETTINGS_ID,
            'updated_at': datetime.now(timezone.utc).isoformat(),
            'days_before_due': settings.days_before_due,
            'send_sms': settings.send_sms,
            'reminder_frequency': settings.reminder_frequency.value,
            'enable_overdue_reminders': settings.enable_overdue_reminders,
            'overdue_reminder_frequency': settings.overdue_reminder_frequency.value,
            'sms_template': settings.sms_template,
        })
        return settings

    def send_payment_reminders(
        self,
        ledger: InstallmentLedger,
        today: Optional[date] = None,
        contact_lookup: Optional[Callable[[str], Optional[str]]] = None
    ) -> Dict[str, int]:
        """
        Remind customers of installments coming due and of overdue ones.

        Settings are read once for the whole run. `contact_lookup` maps a
        customer id to an MSISDN for SMS; without it only in-app reminders go out.
        """
        today = today or date.today()
        settings = self.get_settings()
        results = {"due_soon": 0, "overdue": 0, "skipped": 0}

        for contract in ledger.list_contracts():
            if contract.status not in (ContractStatus.ACTIVE, ContractStatus.DEFAULTED):
                continue
            msisdn = contact_lookup(contract.customer_id) if contact_lookup else None

            for installment in contract.installments:
                status = contract.installment_status(installment, today)
                if status == InstallmentStatus.PAID:
                    continue

                if status == InstallmentStatus.OVERDUE:
                    if not settings.enable_overdue_reminders:
                        continue
                    kind, frequency = "overdue", settings.overdue_reminder_frequency
                    notification_type = NotificationType.PAYMENT_OVERDUE
                elif (installment.due_date - today).days <= settings.days_before_due:
                    kind, frequency = "due", settings.reminder_frequency
                    notification_type = NotificationType.PAYMENT_DUE
                else:
                    continue

                if not self._reminder_due(installment.id, kind, frequency, today):
                    results["skipped"] += 1
                    continue

                data = {
                    "customer_id": contract.customer_id,
                    "contract_number": contract.contract_number,
                    "sequence_number": installment.sequence_number,
                    "amount": installment.remaining.to_string(),
                    "due_date": installment.due_date.isoformat(),
                    "days_overdue": installment.days_overdue(today, contract.grace_period_days),
                }
                self.notify(notification_type, contract.customer_id, data, channels=[NotificationChannel.IN_APP])
                if settings.send_sms and msisdn:
                    self.notify(notification_type, contract.customer_id, data,
                                channels=[NotificationChannel.SMS], recipient_address=msisdn,
                                body_template=settings.sms_template or None)

                self._record_reminder(installment.id, kind, today)
                results["due_soon" if kind == "due" else "overdue"] += 1

        logger.info("Payment reminders sent: %s", results)
        return results

    def _reminder_due(self, installment_id: str, kind: str, frequency: ReminderFrequency, today: date) -> bool:
        record = self.storage.load(self.reminders_table, f"{installment_id}:{kind}")
        if not record:
            return True
        last_sent = date.fromisoformat(record['last_sent'])
        if frequency == ReminderFrequency.ONCE:
            return False
        if frequency == ReminderFrequency.DAILY:
            return today > last_sent
        return today - last_sent >= timedelta(days=7)

    def _record_reminder(self, installment_id: str, kind: str, today: date) -> None:
        record_id = f"{installment_id}:{kind}"
        self.storage.save(self.reminders_table, record_id, {
            'id': record_id,
            'installment_id': installment_id,
            'kind': kind,
            'last_sent': today.isoformat(),
        })

    # Notification Management

    def get_notifications(
        self,
        recipient_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50
    ) -> List[Notification]:
        """Notifications for a recipient, newest first"""
        filters = {"recipient_id": recipient_id}
        if status:
            filters["status"] = status.value
        notifications = [self._notification_from_dict(d) for d in self.storage.find(self.notifications_table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def mark_as_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.notifications_table, notification_id)
        if not data:
            return False
        notification = self._notification_from_dict(data)
        if notification.status != NotificationStatus.READ:
            notification.status = NotificationStatus.READ
            notification.read_at = datetime.now(timezone.utc)
            notification.updated_at = notification.read_at
            self.storage.save(self.notifications_table, notification_id, self._notification_to_dict(notification))
        return True

    def get_delivery_stats(self) -> Dict[str, Any]:
        """Notification delivery statistics"""
        notifications = [self._notification_from_dict(d) for d in self.storage.load_all(self.notifications_table)]
        stats = {
            "total_notifications": len(notifications),
            "by_status": {status.value: 0 for status in NotificationStatus},
            "by_channel": {channel.value: 0 for channel in NotificationChannel},
            "by_type": {kind.value: 0 for kind in NotificationType},
            "delivery_rate": 0.0,
        }

        delivered = 0
        for notification in notifications:
            stats["by_status"][notification.status.value] += 1
            stats["by_channel"][notification.channel.value] += 1
            stats["by_type"][notification.notification_type.value] += 1
            if notification.status in (NotificationStatus.SENT, NotificationStatus.READ):
                delivered += 1

        if notifications:
            stats["delivery_rate"] = delivered / len(notifications)
        return stats

    # Serialization

    def _notification_to_dict(self, notification: Notification) -> Dict:
        result = notification.base_dict()
        result.update({
            "notification_type": notification.notification_type.value,
            "channel": notification.channel.value,
            "priority": notification.priority.value,
            "recipient_id": notification.recipient_id,
            "recipient_address": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body,
            "status": notification.status.value,
            "sent_at": format_datetime(notification.sent_at),
            "read_at": format_datetime(notification.read_at),
            "failed_reason": notification.failed_reason,
            "metadata": notification.metadata,
        })
        return result

    def _notification_from_dict(self, data: Dict) -> Notification:
        return Notification(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            notification_type=NotificationType(data["notification_type"]),
            channel=NotificationChannel(data["channel"]),
            priority=NotificationPriority(data["priority"]),
            recipient_id=data["recipient_id"],
            recipient_address=data["recipient_address"],
            subject=data["subject"],
            body=data["body"],
            status=NotificationStatus(data["status"]),
            sent_at=parse_datetime(data.get("sent_at")),
            read_at=parse_datetime(data.get("read_at")),
            failed_reason=data.get("failed_reason"),
            metadata=data.get("metadata", {}),
        )
