import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

import httpx

from studio_booking.core.config import Settings
from studio_booking.core.database import utcnow
from studio_booking.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

# Daraja answers a status query with this errorCode while the customer
# has not yet acted on the prompt
STILL_PROCESSING_CODES = {"500.001.1001"}


@dataclass(frozen=True)
class PaymentStatusResult:
    """Gateway view of one STK push: 'pending', 'success' or 'failed'."""
    state: str
    result_code: str | None = None
    result_desc: str | None = None
    receipt: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in ("success", "failed")


def receipt_from_items(items: list[dict[str, Any]] | None) -> str | None:
    for item in items or []:
        if item.get("Name") == "MpesaReceiptNumber" and item.get("Value"):
            return str(item["Value"])
    return None


class PaymentGateway(ABC):
    @abstractmethod
    async def initiate(self, phone: str, amount: int, reference: str) -> str:
        """Send a push to `phone` and return the gateway's correlation id."""
        raise NotImplementedError

    @abstractmethod
    async def verify(self, correlation_id: str, receipt: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def query_status(self, correlation_id: str) -> PaymentStatusResult:
        raise NotImplementedError


class MpesaClient(PaymentGateway):
    """
    M-Pesa Daraja STK push client.

    Tokens from the OAuth endpoint are cached until shortly before expiry.
    Every transport or protocol failure surfaces as ExternalServiceError.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._http = http
        self._settings = settings
        self._clock = clock
        self._tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
        self._token: str | None = None
        self._token_expires_at: datetime | None = None

    async def initiate(self, phone: str, amount: int, reference: str) -> str:
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self._settings.MPESA_SHORTCODE,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": self._settings.MPESA_SHORTCODE,
            "PhoneNumber": phone,
            "CallBackURL": self._settings.MPESA_CALLBACK_URL,
            "AccountReference": reference[:12],
            "TransactionDesc": "Booking deposit",
        }
        data = await self._post("/mpesa/stkpush/v1/processrequest", payload)

        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            reason = data.get("errorMessage") or data.get("ResponseDescription") or "unknown error"
            logger.warning("STK push rejected", extra={"reason": reason})
            raise ExternalServiceError("We couldn't send the M-Pesa prompt right now. Please reply 'resend' to try again.")

        logger.info("STK push sent", extra={"correlation_id": data["CheckoutRequestID"]})
        return data["CheckoutRequestID"]

    async def query_status(self, correlation_id: str) -> PaymentStatusResult:
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self._settings.MPESA_SHORTCODE,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_id,
        }
        data = await self._post("/mpesa/stkpushquery/v1/query", payload, allow_error_body=True)

        if str(data.get("errorCode")) in STILL_PROCESSING_CODES:
            return PaymentStatusResult(state="pending")
        if str(data.get("ResponseCode")) != "0":
            reason = data.get("errorMessage") or data.get("ResponseDescription") or "unknown error"
            raise ExternalServiceError(f"Payment status query failed: {reason}")

        result_code = str(data.get("ResultCode")) if data.get("ResultCode") is not None else None
        receipt = receipt_from_items((data.get("CallbackMetadata") or {}).get("Item"))
        if result_code == "0":
            return PaymentStatusResult("success", result_code, data.get("ResultDesc"), receipt)
        if result_code is None:
            return PaymentStatusResult(state="pending")
        return PaymentStatusResult("failed", result_code, data.get("ResultDesc"))

    async def verify(self, correlation_id: str, receipt: str) -> bool:
        """
        Confirm that `receipt` settles the transaction `correlation_id`.

        The status query does not always echo the receipt; a successful
        transaction without one is accepted.
        """
        status = await self.query_status(correlation_id)
        if status.state != "success":
            return False
        if status.receipt:
            return status.receipt.upper() == receipt.upper()
        return True

    # ============== Helpers ==============

    async def _access_token(self) -> str:
        now = self._clock()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        try:
            response = await self._http.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self._settings.MPESA_CONSUMER_KEY, self._settings.MPESA_CONSUMER_SECRET),
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("M-Pesa token request failed", extra={"reason": str(e)})
            raise ExternalServiceError("The payment service is unavailable right now. Please try again shortly.") from e

        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 3599))
        self._token_expires_at = now + timedelta(seconds=max(expires_in - 60, 0))
        return self._token

    async def _post(self, path: str, payload: dict, allow_error_body: bool = False) -> dict:
        token = await self._access_token()
        try:
            response = await self._http.post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            if not (allow_error_body and response.status_code in (400, 500)):
                response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("M-Pesa request failed", extra={"reason": f"{path}: {e}"})
            raise ExternalServiceError("The payment service is unavailable right now. Please try again shortly.") from e

    def _timestamp(self) -> str:
        return self._clock().astimezone(self._tz).strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self._settings.MPESA_SHORTCODE}{self._settings.MPESA_PASSKEY}{timestamp}"
        return base64.b64encode(raw.encode()).decode()
