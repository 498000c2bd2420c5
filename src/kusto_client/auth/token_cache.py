from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Optional

import msal

from kusto_client.config.settings import default_token_cache_path
from kusto_client.utils import get_logger


logger = get_logger(__name__)


class TokenCacheManager:
    """Owns the MSAL token cache shared by every application of a backend.

    With ``persist=False`` the cache lives in memory only and the file at
    ``cache_path`` is never read, written or removed.
    """

    def __init__(self, cache_path: Optional[Path] = None, *, persist: bool = True) -> None:
        self._persist = persist
        self._path = cache_path or default_token_cache_path()
        self._lock = threading.Lock()
        self._cache = self._load()

    @property
    def cache(self) -> msal.SerializableTokenCache:
        return self._cache

    @property
    def path(self) -> Path:
        return self._path

    @property
    def persistent(self) -> bool:
        return self._persist

    def save(self) -> None:
        if not self._persist:
            return
        with self._lock:
            if not self._cache.has_state_changed:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(self._cache.serialize(), encoding="utf-8")
            self._cache.has_state_changed = False
            logger.debug("Persisted MSAL token cache", path=str(self._path))

    def clear(self) -> None:
        """Reset the in-memory cache and overwrite the persisted file before removal."""

        with self._lock:
            self._cache = msal.SerializableTokenCache()
            if self._persist and self._path.exists():
                self._wipe()

    # Internal --------------------------------------------------------

    def _load(self) -> msal.SerializableTokenCache:
        cache = msal.SerializableTokenCache()
        if not self._persist or not self._path.exists():
            return cache
        try:
            cache.deserialize(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "Discarding unreadable token cache",
                path=str(self._path),
                error=str(exc),
            )
            return msal.SerializableTokenCache()
        return cache

    def _wipe(self) -> None:
        try:
            size = self._path.stat().st_size
            if size > 0:
                with self._path.open("r+b") as handle:
                    handle.write(os.urandom(size))
                    handle.flush()
                    os.fsync(handle.fileno())
            self._path.unlink()
            logger.info("Cleared MSAL token cache", path=str(self._path))
        except OSError as exc:  # pragma: no cover - filesystem race condition
            logger.warning(
                "Failed to securely delete token cache",
                path=str(self._path),
                error=str(exc),
            )


__all__ = ["TokenCacheManager"]
