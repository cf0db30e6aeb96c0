"""
Points Engine — User Notifications
===================================

What:  Fire-and-forget notices to users after a point movement commits
       ("new request", "request accepted", "exchange completed").
Why:   Users should learn about changes to their balance, but a notification
       failure must never undo or block a committed movement.
How:   Notifier is the strategy interface; LoggingNotifier is the default.
       A push/real-time transport plugs in as another implementation.
Who:   ExchangeService, after its unit of work has committed.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def send(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...

    async def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        """Best-effort send: failures are logged, never raised."""
        try:
            await self.send(user_id, event, payload)
        except Exception as e:
            logger.warning(
                "Notification %s to user %s failed: %s", event, user_id, str(e)
            )


class LoggingNotifier(Notifier):
    """Writes notifications to the application log."""

    async def send(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info("notify user=%s event=%s payload=%s", user_id, event, payload)
