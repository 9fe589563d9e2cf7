import asyncio
import logging
from typing import Callable, TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_booking.core.exceptions import ExternalServiceError
from studio_booking.models.enums import PaymentStatus
from studio_booking.services.booking_messages import stuck_payment_message
from studio_booking.services.mpesa_client import PaymentGateway
from studio_booking.services.notifier import Notifier

if TYPE_CHECKING:
    from studio_booking.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class PaymentStatusPoller:
    """
    Background status queries for pushes whose callback never arrives.

    One task per correlation id. A task stops as soon as the payment
    leaves pending, whoever settled it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        payment_service_factory: Callable[[AsyncSession], "PaymentService"],
        notifier: Notifier,
        attempts: int = 6,
        interval_seconds: float = 10.0,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.payment_service_factory = payment_service_factory
        self.notifier = notifier
        self.attempts = attempts
        self.interval_seconds = interval_seconds
        self._tasks: dict[str, asyncio.Task] = {}

    def watch(self, correlation_id: str, customer_id: str) -> None:
        if correlation_id in self._tasks:
            return
        task = asyncio.create_task(self._poll(correlation_id, customer_id))
        self._tasks[correlation_id] = task
        task.add_done_callback(lambda _task, key=correlation_id: self._tasks.pop(key, None))

    def cancel(self, correlation_id: str) -> None:
        task = self._tasks.get(correlation_id)
        # The polling task settles payments itself; never cancel it from inside
        if task is None or task is asyncio.current_task():
            return
        self._tasks.pop(correlation_id, None)
        task.cancel()

    def is_watching(self, correlation_id: str) -> bool:
        return correlation_id in self._tasks

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _poll(self, correlation_id: str, customer_id: str) -> None:
        for attempt in range(1, self.attempts + 1):
            await asyncio.sleep(self.interval_seconds)
            if await self.poll_once(correlation_id):
                return
            logger.debug(
                "Payment still pending",
                extra={"correlation_id": correlation_id, "reason": f"attempt={attempt}"},
            )

        async with self.session_factory() as db:
            payments = self.payment_service_factory(db)
            payment = await payments.get_by_correlation_id(correlation_id)
            still_pending = payment is not None and payment.status == PaymentStatus.PENDING

        if still_pending:
            logger.warning(
                "Payment unresolved after polling",
                extra={"customer_id": customer_id, "correlation_id": correlation_id},
            )
            await self.notifier.send_text(customer_id, stuck_payment_message())

    async def poll_once(self, correlation_id: str) -> bool:
        """
        Query the gateway once and apply a terminal result.

        Returns:
            True when the payment is no longer pending
        """
        async with self.session_factory() as db:
            payments = self.payment_service_factory(db)
            payment = await payments.get_by_correlation_id(correlation_id)
            if payment is None or payment.status != PaymentStatus.PENDING:
                return True

            try:
                status = await self.gateway.query_status(correlation_id)
            except ExternalServiceError as e:
                logger.warning(
                    "Payment status query failed",
                    extra={"correlation_id": correlation_id, "reason": str(e)},
                )
                return False

            if not status.is_terminal:
                return False

            metadata = {"MpesaReceiptNumber": status.receipt} if status.receipt else {}
            await payments.handle_callback(
                correlation_id,
                status.result_code or ("0" if status.state == "success" else "1"),
                metadata,
                status.result_desc,
            )
            return True
