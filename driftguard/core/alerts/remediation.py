"""
Response Action Executor
------------------------
Runs response actions attached to alerts. The built-in handlers are
logging adapters that record the intended remediation; real integrations
are registered with ``register``. Every execution is time-bounded.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from driftguard.core.alerts.types import Alert, ResponseAction
from driftguard.core.scheduler import utc_now

logger = logging.getLogger(__name__)

Handler = Callable[[ResponseAction, Alert], Awaitable[Any]]


class ResponseActionExecutor:
    def __init__(
        self,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
        emergency_notifier: Optional[Callable[[Alert], Awaitable[Dict[str, bool]]]] = None,
    ):
        self.timeout = timeout
        self.clock = clock
        self.emergency_notifier = emergency_notifier
        self.handlers: Dict[str, Handler] = {
            "disable_user": self._disable_user,
            "block_ip": self._block_ip,
            "rotate_keys": self._rotate_keys,
            "isolate_system": self._isolate_system,
            "send_notification": self._send_notification,
        }

    def register(self, action: str, handler: Handler) -> None:
        """Register or replace the handler for an action name"""
        self.handlers[action] = handler

    async def execute(self, action: ResponseAction, alert: Alert) -> Any:
        """
        Execute a response action.

        Raises:
            asyncio.TimeoutError: If the handler does not finish in time
            Exception: Whatever the handler raises
        """
        handler = self.handlers.get(action.action, self._simulate)
        return await asyncio.wait_for(handler(action, alert), timeout=self.timeout)

    async def _simulate(self, action: ResponseAction, alert: Alert) -> Any:
        logger.info(f"Would execute action: {action.action} - {action.description}")
        return {"simulated": True, "action": action.action}

    async def _disable_user(self, action: ResponseAction, alert: Alert) -> Any:
        logger.info(f"Would disable user: {action.description}")
        return {"action": "disable_user", "user": action.description, "timestamp": self.clock().isoformat()}

    async def _block_ip(self, action: ResponseAction, alert: Alert) -> Any:
        logger.info(f"Would block IP address: {action.description}")
        return {"action": "block_ip", "ip": action.description, "timestamp": self.clock().isoformat()}

    async def _rotate_keys(self, action: ResponseAction, alert: Alert) -> Any:
        logger.info(f"Would rotate keys for resources: {', '.join(alert.affected_resources)}")
        return {
            "action": "rotate_keys",
            "resources": list(alert.affected_resources),
            "timestamp": self.clock().isoformat(),
        }

    async def _isolate_system(self, action: ResponseAction, alert: Alert) -> Any:
        logger.info(f"Would isolate system: {action.description}")
        return {"action": "isolate_system", "system": action.description, "timestamp": self.clock().isoformat()}

    async def _send_notification(self, action: ResponseAction, alert: Alert) -> Any:
        if self.emergency_notifier is None:
            return {"action": "emergency_notification", "channels": 0}
        results = await self.emergency_notifier(alert)
        return {"action": "emergency_notification", "channels": len(results)}
