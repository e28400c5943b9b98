from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from redis.exceptions import RedisError

from susi_auth.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    USER_REGISTERED = "UserRegistered"
    ADMIN_CREATED = "AdminCreated"
    USER_ROLE_CHANGED = "UserRoleChanged"
    USER_STATUS_CHANGED = "UserStatusChanged"
    PASSWORD_RESET_REQUESTED = "PasswordResetRequested"
    PASSWORD_RESET = "PasswordReset"


class EventCache(Protocol):
    async def publish(self, channel: str, message: str) -> int: ...


class EventPublisher:
    """Fire-and-forget fan-out of account lifecycle events.

    Events are always written to the structured log. When a Redis cache is
    configured they are also published on ``channel`` as JSON. Delivery
    failures are logged and never surface to the caller: the state change
    they describe has already been committed.
    """

    def __init__(
        self,
        cache: Optional[EventCache] = None,
        *,
        channel: str = "susi.auth.events",
        timeout: float = 2.0,
    ) -> None:
        self.cache = cache
        self.channel = channel
        self.timeout = timeout

    @staticmethod
    def envelope(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": EventType(event_type).value,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        event = self.envelope(event_type, payload)
        logger.info("auth_event", event_type=event["type"], **payload)
        if self.cache is None:
            return
        try:
            await asyncio.wait_for(
                self.cache.publish(self.channel, json.dumps(event, default=str)),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.warning(
                "auth_event_publish_failed",
                event_type=event["type"],
                error=str(exc) or type(exc).__name__,
            )
