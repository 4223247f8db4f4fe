from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Outbound channel for account alerts.

    Delivery (email, push, webhooks) lives behind the queue; the ledger
    only hands over a JSON-serializable message. Brokers such as Redis or
    RabbitMQ plug in by implementing `enqueue`.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """Keeps messages in arrival order; used by tests."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def drain(self) -> List[Dict[str, Any]]:
        drained, self.messages = self.messages, []
        return drained


class LoggingNotificationQueue(AsyncNotificationQueue):
    """
    Emits each alert as a log record. Default when no broker is wired in,
    so alerts still reach whatever collects the service logs.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        logger.log(
            self._level,
            "Account alert %s for %s",
            payload.get("type"),
            payload.get("account_id"),
            extra={"notification": payload},
        )
