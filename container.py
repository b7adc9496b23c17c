"""Dependency container wiring for moodledger.

build_container() is the single place where Settings turn into live
objects. The API lifespan, the operator CLI and the tests all build their
services through it, so every entry point runs the same wiring.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import redis

from auth.credentials import PasswordHasher
from auth.directory import IdentityDirectory
from auth.service import AuthService
from auth.sessions import MemorySessionStore, RedisSessionStore, SessionManager, SessionStore, SqlSessionStore
from collectibles.pool import POOL_USERNAME, CommunityPool
from collectibles.registry import CollectibleRegistry
from core.config import Settings, get_settings
from core.database import Database
from ledger.service import Ledger

logger = logging.getLogger("moodledger.container")


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    db: Database
    hasher: PasswordHasher
    sessions: SessionManager
    directory: IdentityDirectory
    auth: AuthService
    ledger: Ledger
    registry: CollectibleRegistry
    pool: CommunityPool
    close_resources: Callable[[], None]

    def close(self) -> None:
        self.close_resources()


def _build_session_store(settings: Settings, db: Database) -> tuple[SessionStore, Callable[[], None]]:
    if settings.session_backend == "memory":
        return MemorySessionStore(), lambda: None
    if settings.session_backend == "redis":
        client = redis.Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.storage_timeout_seconds,
            socket_connect_timeout=settings.storage_timeout_seconds,
        )
        return RedisSessionStore(client), client.close
    return SqlSessionStore(db), lambda: None


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or get_settings()
    db = Database(resolved_settings.database_url, timeout_seconds=resolved_settings.storage_timeout_seconds)
    store, close_store = _build_session_store(resolved_settings, db)

    hasher = PasswordHasher(
        time_cost=resolved_settings.argon2_time_cost,
        memory_cost=resolved_settings.argon2_memory_cost,
        parallelism=resolved_settings.argon2_parallelism,
    )
    # Derived at startup so the first unknown-username login costs the same as the rest.
    hasher.dummy_hash
    sessions = SessionManager(
        store,
        secret_key=resolved_settings.secret_key,
        ttl_seconds=resolved_settings.session_ttl_seconds,
        sliding=resolved_settings.session_sliding,
    )
    directory = IdentityDirectory(db)
    auth = AuthService(
        directory,
        sessions,
        hasher,
        min_password_length=resolved_settings.min_password_length,
        reserved_usernames=frozenset({POOL_USERNAME}),
    )
    ledger = Ledger(db)
    pool = CommunityPool(
        db,
        directory,
        ledger,
        target_tokens=resolved_settings.pool_target_tokens,
        projected_burn=resolved_settings.mint_cost,
    )
    pool_account = pool.ensure_account()
    registry = CollectibleRegistry(
        db,
        ledger,
        pool_account_id=pool_account.id,
        burn_beneficiary=resolved_settings.burn_beneficiary,
        default_mint_cost=resolved_settings.mint_cost,
        single_gift=resolved_settings.single_gift,
    )
    logger.info(
        "Container built (sessions=%s, burn_beneficiary=%s)",
        resolved_settings.session_backend,
        resolved_settings.burn_beneficiary,
    )

    def close_resources() -> None:
        close_store()
        db.close()

    return AppContainer(
        settings=resolved_settings,
        db=db,
        hasher=hasher,
        sessions=sessions,
        directory=directory,
        auth=auth,
        ledger=ledger,
        registry=registry,
        pool=pool,
        close_resources=close_resources,
    )
