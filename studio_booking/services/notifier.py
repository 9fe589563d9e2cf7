import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Outbound channel to the customer (WhatsApp, SMS, ...)."""

    @abstractmethod
    async def send_text(self, customer_id: str, text: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default notifier: writes outbound messages to the log."""

    async def send_text(self, customer_id: str, text: str) -> None:
        logger.info("Outbound message: %s", text, extra={"customer_id": customer_id})
