"""Construction of the backing store and change feed pair."""

from __future__ import annotations

import logging

from parley.core.settings import Settings, settings
from parley.db.session import SessionLocal, make_engine, make_session_factory
from parley.services.identity import IdentityProvider
from parley.services.realtime import RealtimeFeed
from parley.services.rest_store import RestBackingStore
from parley.services.sql_store import SqlBackingStore
from parley.services.store import BackingStore, ChangeFeed

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("sql", "rest")


def build_backend(
    config: Settings | None = None,
    identity: IdentityProvider | None = None,
) -> tuple[BackingStore, ChangeFeed]:
    """Return the store and feed selected by ``config.store_backend``.

    The REST store and its realtime feed read the bearer credential from
    ``identity`` on every request, so a token refresh on the same provider
    needs no rebuild.
    """
    config = config or settings
    backend = config.store_backend.lower()

    if backend == "sql":
        if config.database_url == settings.database_url:
            session_factory = SessionLocal
        else:
            session_factory = make_session_factory(
                make_engine(config.database_url, echo=config.sql_debug)
            )
        store = SqlBackingStore(session_factory)
        logger.info("Using SQL backing store at %s", config.database_url)
        return store, store.feed

    if backend == "rest":
        if identity is None:
            raise ValueError("The REST backend requires an identity provider")
        if not config.rest_base_url:
            raise ValueError("PARLEY_REST_URL must be set for the REST backend")
        logger.info("Using REST backing store at %s", config.rest_base_url)
        if not config.realtime_enabled:
            logger.warning("PARLEY_REALTIME_URL is not set; live updates will not be received")
        return RestBackingStore(identity, config), RealtimeFeed(identity.bearer_token, config)

    raise ValueError(
        f"Unknown store backend {config.store_backend!r}; expected one of {SUPPORTED_BACKENDS}"
    )
