import asyncio
import logging
import threading
import time
from concurrent.futures import Future
from typing import Union

import jwt

from .env import load_token_config_from_env
from .errors import AuthFailure
from .keys import KeySource
from .state import Credential
from .types import TokenConfig

# ---------- Base cache (shared logic; synchronization handled by subclasses) ----------


class _TokenCache:
    def __init__(self, config: TokenConfig):
        """Initialize a _TokenCache.

        Args:
            config (TokenConfig): key id, issuer id, key source and token timings

        Raises:
            ConfigFailure: if no key source is configured or the key path is unsafe
        """
        self.key_id = config.key_id
        self.issuer_id = config.issuer_id
        self.audience = config.audience
        self.lifetime = config.lifetime
        self.refresh_buffer = config.refresh_buffer
        self._source = KeySource.from_config(config)
        self._key = None
        self._credential: Union[Credential, None] = None
        # bumped by invalidate(); a refresh started under an older generation is not cached
        self._generation = 0
        self._logger = logging.getLogger("ascgate")

    def _now(self) -> float:
        return time.time()

    def _fresh_credential(self) -> Union[Credential, None]:
        cred = self._credential
        if cred is not None and cred.is_fresh(self._now(), self.refresh_buffer):
            return cred
        return None

    def has_valid_token(self) -> bool:
        return self._fresh_credential() is not None

    def _mint(self, key) -> Credential:
        now = int(self._now())
        expires_at = now + int(self.lifetime)
        try:
            token = jwt.encode(
                {
                    "iss": self.issuer_id,
                    "iat": now,
                    "exp": expires_at,
                    "aud": self.audience,
                },
                key,
                algorithm="ES256",
                headers={"kid": self.key_id, "typ": "JWT"},
            )
        except Exception as e:
            raise AuthFailure(f"Failed to generate JWT: {e}") from e
        self._logger.debug(f"token signed kid={self.key_id} expires_at={expires_at}")
        return Credential(token=token, issued_at=float(now), expires_at=float(expires_at))

    def _store(self, generation: int, key, cred: Credential) -> None:
        if generation != self._generation:
            self._logger.debug("token refresh finished after invalidate(); not caching")
            return
        self._key = key
        self._credential = cred

    def _invalidate(self) -> None:
        self._generation += 1
        self._credential = None
        self._key = None


# ---------- Sync manager (threads) ----------


class TokenManager(_TokenCache):
    """Signs and caches ES256 bearer tokens; safe to share between threads.

    Concurrent callers that find no fresh credential share a single signing
    operation through one Future; everyone gets the same token (or the same
    failure).
    """

    def __init__(self, config: TokenConfig):
        super().__init__(config)
        self._lock = threading.Lock()
        self._inflight: Union[Future, None] = None

    @classmethod
    def from_env(cls, env_path: Union[str, None] = None, **kwargs):
        return cls(load_token_config_from_env(env_path=env_path, **kwargs))

    def acquire(self) -> Credential:
        with self._lock:
            cred = self._fresh_credential()
            if cred is not None:
                return cred
            flight = self._inflight
            leader = flight is None
            if leader:
                flight = self._inflight = Future()
                generation = self._generation
                key = self._key

        if leader:
            try:
                if key is None:
                    key = self._source.load()
                cred = self._mint(key)
                with self._lock:
                    self._store(generation, key, cred)
                flight.set_result(cred)
            except BaseException as e:
                # waiters block on flight until it is resolved, whatever was raised
                flight.set_exception(e)
                if not isinstance(e, Exception):
                    raise
            finally:
                with self._lock:
                    if self._inflight is flight:
                        self._inflight = None
        return flight.result()

    def token(self) -> str:
        return self.acquire().token

    def invalidate(self) -> None:
        with self._lock:
            self._invalidate()
            # waiters on a running refresh keep their Future; new callers start over
            self._inflight = None

    def close(self) -> None:
        self.invalidate()


# ---------- Async manager (asyncio) ----------


class AsyncTokenManager(_TokenCache):
    def __init__(self, config: TokenConfig):
        super().__init__(config)
        self._lock = asyncio.Lock()
        self._inflight: Union[asyncio.Task, None] = None

    @classmethod
    def from_env(cls, env_path: Union[str, None] = None, **kwargs):
        return cls(load_token_config_from_env(env_path=env_path, **kwargs))

    async def acquire(self) -> Credential:
        async with self._lock:
            cred = self._fresh_credential()
            if cred is not None:
                return cred
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._refresh(self._generation))
            flight = self._inflight
        # shield: a cancelled waiter must not cancel the refresh other callers wait on
        return await asyncio.shield(flight)

    async def _refresh(self, generation: int) -> Credential:
        try:
            key = self._key
            if key is None:
                key = await asyncio.to_thread(self._source.load)
            cred = await asyncio.to_thread(self._mint, key)
            self._store(generation, key, cred)
            return cred
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None

    async def token(self) -> str:
        return (await self.acquire()).token

    def invalidate(self) -> None:
        self._invalidate()
        self._inflight = None

    async def close(self) -> None:
        self.invalidate()
