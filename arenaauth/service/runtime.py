from __future__ import annotations

import os
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from arenaauth.config import Settings, get_settings
from arenaauth.logging import get_logger
from arenaauth.service.auth import AuthService
from arenaauth.storage.memory import MemoryStore
from arenaauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:hunter2@db/auth -> postgresql://app:***@db/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds the store and the auth service for one process.

    No module-level instance exists. The application creates
    one at start-up and hands it to ``arenaauth.api.deps.install_runtime``.
    Tests build their own with a memory store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            database_url=None
            if self.settings.use_memory_store
            else _mask_url_password(self.settings.database_url),
        )
        if store is not None:
            self.store = store
        else:
            self.store = self._build_store()
        self.auth = AuthService(self.store, self.settings)

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                fs_root = (
                    os.path.join(self.settings.state_dir, "memory")
                    if self.settings.persist_memory_store
                    else None
                )
                store: Union[MemoryStore, PostgresStore] = MemoryStore(
                    fs_root, secret_encryption_key=self.settings.secret_encryption_key
                )
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    secret_encryption_key=self.settings.secret_encryption_key,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def close(self) -> None:
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()
