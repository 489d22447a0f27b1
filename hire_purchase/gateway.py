"""
Payment Gateway Module

Capability contract for the mobile-money gateway plus two implementations:
an httpx client speaking a neutral JSON contract to a gateway proxy service,
and a scriptable mock for tests and local runs.
"""

import httpx
import logging
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .currency import Money
from .errors import GatewayError, GatewayUnavailableError

logger = logging.getLogger("hire_purchase.gateway")


class ChargeStatus(Enum):
    """Gateway-reported charge outcome"""
    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILED = "FAILED"


class VerificationType(Enum):
    """How the customer confirms a mandate"""
    OTP = "OTP"
    USSD = "USSD"


@dataclass
class StatusResult:
    """Status lookup answer; reason is set for failures"""
    status: ChargeStatus
    reason: Optional[str] = None


@dataclass
class MandateInitiation:
    """Gateway answer to a mandate request"""
    external_mandate_id: str
    verification_type: VerificationType


class GatewayAdapter(ABC):
    """Mobile-money gateway capabilities consumed by the engine"""

    @abstractmethod
    def initiate_charge(self, amount: Money, msisdn: str, network: str, reference: str) -> str:
        """Start a customer-approved charge; returns the gateway's external reference"""
        pass

    @abstractmethod
    def initiate_direct_debit(
        self, amount: Money, msisdn: str, network: str, reference: str, external_mandate_id: str
    ) -> str:
        """Start a mandate-backed debit; returns the gateway's external reference"""
        pass

    @abstractmethod
    def check_charge_status(self, external_ref: str) -> StatusResult:
        pass

    @abstractmethod
    def initiate_mandate(self, msisdn: str, network: str, reference: str) -> MandateInitiation:
        pass

    @abstractmethod
    def verify_mandate_otp(self, reference: str, otp: str) -> bool:
        pass

    @abstractmethod
    def check_mandate_status(self, reference: str) -> StatusResult:
        """PENDING until the customer answers the USSD prompt"""
        pass

    def close(self) -> None:
        pass


class HttpGatewayAdapter(GatewayAdapter):
    """REST client for the gateway proxy service"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.request(method, path, json=payload, headers=headers)
        except httpx.TransportError as e:
            logger.error("Gateway connection failed: %s", e)
            raise GatewayUnavailableError(f"Gateway unreachable: {e}") from e

        if response.status_code >= 500:
            logger.warning("Gateway returned %s: %s", response.status_code, response.text)
            raise GatewayUnavailableError(f"Gateway error {response.status_code}")
        if response.status_code >= 400:
            raise GatewayError(f"Gateway rejected request ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned a non-JSON body for {method} {path}") from e
        if not isinstance(data, dict):
            raise GatewayError(f"Gateway returned an unexpected body for {method} {path}")
        return data

    @staticmethod
    def _field(data: Dict[str, Any], name: str) -> Any:
        if data.get(name) is None:
            raise GatewayError(f"Gateway response is missing '{name}'")
        return data[name]

    @classmethod
    def _status(cls, data: Dict[str, Any]) -> StatusResult:
        value = str(cls._field(data, "status")).upper()
        try:
            status = ChargeStatus(value)
        except ValueError as e:
            raise GatewayError(f"Gateway returned unknown status {value}") from e
        return StatusResult(status, data.get("reason"))

    @staticmethod
    def _charge_payload(amount: Money, msisdn: str, network: str, reference: str) -> Dict[str, Any]:
        return {
            "reference": reference,
            "amount": str(amount.amount),
            "currency": amount.currency.code,
            "msisdn": msisdn,
            "network": network,
        }

    def initiate_charge(self, amount: Money, msisdn: str, network: str, reference: str) -> str:
        data = self._request("POST", "/charges", self._charge_payload(amount, msisdn, network, reference))
        return self._field(data, "external_ref")

    def initiate_direct_debit(
        self, amount: Money, msisdn: str, network: str, reference: str, external_mandate_id: str
    ) -> str:
        payload = self._charge_payload(amount, msisdn, network, reference)
        payload["mandate_id"] = external_mandate_id
        data = self._request("POST", "/direct-debits", payload)
        return self._field(data, "external_ref")

    def check_charge_status(self, external_ref: str) -> StatusResult:
        data = self._request("GET", f"/charges/{external_ref}")
        return self._status(data)

    def initiate_mandate(self, msisdn: str, network: str, reference: str) -> MandateInitiation:
        data = self._request("POST", "/mandates", {
            "reference": reference,
            "msisdn": msisdn,
            "network": network,
        })
        return MandateInitiation(
            external_mandate_id=self._field(data, "mandate_id"),
            verification_type=VerificationType(data.get("verification_type", "OTP").upper())
        )

    def verify_mandate_otp(self, reference: str, otp: str) -> bool:
        data = self._request("POST", f"/mandates/{reference}/verify", {"otp": otp})
        return bool(data.get("verified"))

    def check_mandate_status(self, reference: str) -> StatusResult:
        data = self._request("GET", f"/mandates/{reference}")
        return self._status(data)

    def health_check(self) -> bool:
        try:
            return self._client.get("/health").status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        self._client.close()


class MockGateway(GatewayAdapter):
    """In-process gateway for testing: scripted outcomes, recorded calls"""

    def __init__(self, verification_type: VerificationType = VerificationType.OTP, valid_otp: str = "123456"):
        self.verification_type = verification_type
        self.valid_otp = valid_otp
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.charge_statuses: Dict[str, StatusResult] = {}
        self.mandate_statuses: Dict[str, StatusResult] = {}
        self.fail_next: Optional[Exception] = None
        self._counter = itertools.count(1)

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def set_charge_status(self, external_ref: str, status: ChargeStatus, reason: Optional[str] = None) -> None:
        self.charge_statuses[external_ref] = StatusResult(status, reason)

    def set_mandate_status(self, reference: str, status: ChargeStatus, reason: Optional[str] = None) -> None:
        self.mandate_statuses[reference] = StatusResult(status, reason)

    def initiate_charge(self, amount: Money, msisdn: str, network: str, reference: str) -> str:
        self._record("initiate_charge", amount=amount, msisdn=msisdn, network=network, reference=reference)
        return f"MOCK-{next(self._counter)}"

    def initiate_direct_debit(
        self, amount: Money, msisdn: str, network: str, reference: str, external_mandate_id: str
    ) -> str:
        self._record("initiate_direct_debit", amount=amount, msisdn=msisdn, network=network,
                     reference=reference, external_mandate_id=external_mandate_id)
        return f"MOCK-DD-{next(self._counter)}"

    def check_charge_status(self, external_ref: str) -> StatusResult:
        self._record("check_charge_status", external_ref=external_ref)
        return self.charge_statuses.get(external_ref, StatusResult(ChargeStatus.PENDING))

    def initiate_mandate(self, msisdn: str, network: str, reference: str) -> MandateInitiation:
        self._record("initiate_mandate", msisdn=msisdn, network=network, reference=reference)
        return MandateInitiation(f"MOCK-MDT-{next(self._counter)}", self.verification_type)

    def verify_mandate_otp(self, reference: str, otp: str) -> bool:
        self._record("verify_mandate_otp", reference=reference, otp=otp)
        return otp == self.valid_otp

    def check_mandate_status(self, reference: str) -> StatusResult:
        self._record("check_mandate_status", reference=reference)
        return self.mandate_statuses.get(reference, StatusResult(ChargeStatus.PENDING))
