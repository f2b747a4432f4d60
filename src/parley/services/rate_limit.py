"""Client for the server-side send quota check."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from parley.core.settings import Settings, settings
from parley.services.errors import TransientNetworkError
from parley.services.store import BackingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Quota of ``max_attempts`` per ``window_minutes`` for one action type."""

    action_type: str = "messaging"
    max_attempts: int = 50
    window_minutes: int = 60

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> RateLimitPolicy:
        config = config or settings
        return cls(
            action_type=config.rate_limit_action,
            max_attempts=config.rate_limit_max_attempts,
            window_minutes=config.rate_limit_window_minutes,
        )


class RateLimiterClient:
    """Asks the backing store's atomic counter whether an action may proceed.

    A failing check is fail-open: the action is allowed and a warning is
    logged. Availability of sending is preferred over strict quota
    enforcement; the server still counts attempts when it is reachable.
    """

    def __init__(self, store: BackingStore, policy: RateLimitPolicy | None = None) -> None:
        self._store = store
        self.policy = policy or RateLimitPolicy.from_settings()

    async def allow(self, user_id: str, policy: RateLimitPolicy | None = None) -> bool:
        policy = policy or self.policy
        try:
            allowed = await self._store.check_rate_limit(
                user_id,
                policy.action_type,
                policy.max_attempts,
                policy.window_minutes,
            )
        except TransientNetworkError as exc:
            logger.warning(
                "Rate limit check failed for %s, proceeding without rate limiting: %s",
                user_id,
                exc,
            )
            return True

        if not allowed:
            logger.info(
                "Rate limit exceeded for %s (%s: %d per %d min)",
                user_id,
                policy.action_type,
                policy.max_attempts,
                policy.window_minutes,
            )
        return bool(allowed)
