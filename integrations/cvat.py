"""CVAT integration: session management and cached task lookups.

Annotation tasks are named after the source video without its extension,
so ``cam1.mp4`` is looked up as the task ``cam1``. Lookups never raise;
an unreachable CVAT simply makes every video look "not annotated".
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import Counter
from typing import Any, Iterable, Optional, Protocol

import httpx

from .common import (
    AuthenticationFailedError,
    ClientFactory,
    Clock,
    NotConfiguredError,
    RemoteUnavailableError,
    default_client_factory,
    log,
    now_ms,
)
from .models import CvatCredentials, CvatOccurrence, CvatSession, CvatVideoStatus, TaskCacheEntry

TOKEN_TTL_MS = 3_600_000
BATCH_SIZE = 10
NO_PROJECT = "No Project"

_EXT_RE = re.compile(r"\.[^/.]+$")


class CvatConfigSource(Protocol):
    def get_cvat_credentials(self) -> Optional[CvatCredentials]:
        ...


def task_name_for(filename: str) -> str:
    """Strip the last extension: ``a.b.mp4`` -> ``a.b``."""
    return _EXT_RE.sub("", filename)


class CvatSessionManager:
    """Owns the CVAT token and re-authenticates when it goes stale."""

    def __init__(
        self,
        config: CvatConfigSource,
        *,
        client_factory: ClientFactory | None = None,
        clock: Clock | None = None,
        token_ttl_ms: int = TOKEN_TTL_MS,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or default_client_factory
        self._clock = clock or now_ms
        self._token_ttl_ms = token_ttl_ms
        self._session: CvatSession | None = None
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    @property
    def session(self) -> CvatSession | None:
        return self._session

    def invalidate(self) -> None:
        self._session = None

    def _login_lock(self) -> asyncio.Lock:
        # asyncio.Lock binds to the loop it first waits on.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _needs_login(self, creds: CvatCredentials) -> bool:
        session = self._session
        return session is None or not session.is_valid(creds.binding(), self._clock())

    async def ensure_authenticated(self, client: httpx.AsyncClient | None = None) -> CvatCredentials:
        """Return current credentials, logging in first if the session is unusable.

        The session is bound to URL and username only. Concurrent callers
        share a single login.
        """
        creds = self._config.get_cvat_credentials()
        if creds is None:
            raise NotConfiguredError("CVAT not configured")
        # TODO: include a password fingerprint in SessionBinding so a changed
        # password forces a fresh login instead of reusing the old token.
        if self._needs_login(creds):
            async with self._login_lock():
                if self._needs_login(creds):
                    if client is None:
                        async with self._client_factory() as own:
                            await self._authenticate(own, creds)
                    else:
                        await self._authenticate(client, creds)
        return creds

    async def _authenticate(self, client: httpx.AsyncClient, creds: CvatCredentials) -> None:
        try:
            self._session = await self._login(client, creds)
        except AuthenticationFailedError:
            self._session = None
            raise
        log("cvat", "authenticated to %s as %s", creds.url, creds.username)

    async def _login(self, client: httpx.AsyncClient, creds: CvatCredentials) -> CvatSession:
        try:
            resp = await client.post(
                f"{creds.url}/api/auth/login",
                json={"username": creds.username, "password": creds.password},
            )
        except httpx.HTTPError as exc:
            raise AuthenticationFailedError(f"Authentication failed: {exc}") from exc
        if not resp.is_success:
            raise AuthenticationFailedError(
                f"Authentication failed: {resp.status_code}", status_code=resp.status_code
            )
        try:
            token = resp.json().get("key")
        except (ValueError, AttributeError) as exc:
            raise AuthenticationFailedError("Authentication failed: malformed login response") from exc
        if not token:
            raise AuthenticationFailedError("Authentication failed: no token in login response")
        return CvatSession(
            token=str(token),
            expires_at_ms=self._clock() + self._token_ttl_ms,
            binding=creds.binding(),
        )

    def auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._session is not None:
            headers["Authorization"] = f"Token {self._session.token}"
        return headers


class CvatService:
    """Answers "is this video already annotated?" with short-lived caching."""

    def __init__(
        self,
        config: CvatConfigSource,
        *,
        session: CvatSessionManager | None = None,
        client_factory: ClientFactory | None = None,
        clock: Clock | None = None,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or default_client_factory
        self._clock = clock or now_ms
        self._session = session or CvatSessionManager(
            config, client_factory=self._client_factory, clock=self._clock
        )
        self._batch_size = max(1, int(batch_size))
        self._task_cache: dict[str, TaskCacheEntry] = {}
        self._project_cache: dict[int, str] = {}

    @property
    def session(self) -> CvatSessionManager:
        return self._session

    def is_configured(self) -> bool:
        return self._config.get_cvat_credentials() is not None

    def clear_cache(self) -> None:
        self._task_cache.clear()
        self._project_cache.clear()

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: dict[str, Any] | None = None) -> Any:
        resp = await client.get(url, params=params, headers=self._session.auth_headers())
        if not resp.is_success:
            raise RemoteUnavailableError(f"CVAT API error: {resp.status_code}", status_code=resp.status_code)
        return resp.json()

    async def get_project_name(self, project_id: int, client: httpx.AsyncClient | None = None) -> str:
        """Project names are cached for the life of the process; failures are not."""
        cached = self._project_cache.get(project_id)
        if cached:
            return cached
        placeholder = f"Project #{project_id}"
        try:
            if client is None:
                async with self._client_factory() as own:
                    return await self._fetch_project_name(own, project_id, placeholder)
            return await self._fetch_project_name(client, project_id, placeholder)
        except (
            httpx.HTTPError,
            json.JSONDecodeError,
            AttributeError,
            AuthenticationFailedError,
            NotConfiguredError,
            RemoteUnavailableError,
        ) as exc:
            log("cvat", "failed to get project name for %s: %s", project_id, exc, level=logging.WARNING)
            return placeholder

    async def _fetch_project_name(self, client: httpx.AsyncClient, project_id: int, placeholder: str) -> str:
        creds = await self._session.ensure_authenticated(client)
        data = await self._get_json(client, f"{creds.url}/api/projects/{project_id}")
        name = (data or {}).get("name") if isinstance(data, dict) else None
        if not name:
            return placeholder
        self._project_cache[project_id] = str(name)
        return str(name)

    async def get_task_stage(self, task_id: int, client: httpx.AsyncClient | None = None) -> Optional[str]:
        """Stage lives on jobs, not tasks; the first job's stage is used."""
        try:
            if client is None:
                async with self._client_factory() as own:
                    return await self._fetch_task_stage(own, task_id)
            return await self._fetch_task_stage(client, task_id)
        except (
            httpx.HTTPError,
            json.JSONDecodeError,
            AttributeError,
            AuthenticationFailedError,
            NotConfiguredError,
            RemoteUnavailableError,
        ) as exc:
            log("cvat", "failed to get task stage for %s: %s", task_id, exc, level=logging.WARNING)
            return None

    async def _fetch_task_stage(self, client: httpx.AsyncClient, task_id: int) -> Optional[str]:
        creds = await self._session.ensure_authenticated(client)
        data = await self._get_json(client, f"{creds.url}/api/jobs", params={"task_id": task_id})
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or not results:
            return None
        first = results[0]
        stage = first.get("stage") if isinstance(first, dict) else None
        return str(stage) if stage is not None else None

    async def _occurrence(self, client: httpx.AsyncClient, creds: CvatCredentials, task: dict) -> CvatOccurrence:
        task_id = int(task["id"])
        project_id = task.get("project_id")
        if project_id is not None:
            project_id = int(project_id)
            project_name, stage = await asyncio.gather(
                self.get_project_name(project_id, client),
                self.get_task_stage(task_id, client),
            )
        else:
            project_name = NO_PROJECT
            stage = await self.get_task_stage(task_id, client)
        return CvatOccurrence(
            task_id=task_id,
            task_url=f"{creds.url}/tasks/{task_id}",
            project_id=project_id,
            project_name=project_name,
            stage=stage,
        )

    @staticmethod
    def summarize(occurrences: list[CvatOccurrence]) -> CvatVideoStatus:
        """Build a status, flagging projects that hold the same task name twice."""
        if not occurrences:
            return CvatVideoStatus.not_found()
        counts = Counter(occ.project_id for occ in occurrences)
        dup_ids = {pid for pid, n in counts.items() if n > 1}
        names: Optional[list[str]] = None
        if dup_ids:
            names = []
            for occ in occurrences:
                if occ.project_id in dup_ids and occ.project_name not in names:
                    names.append(occ.project_name)
        return CvatVideoStatus(
            exists=True,
            occurrences=occurrences,
            has_duplicate_in_same_project=bool(dup_ids),
            duplicate_project_names=names,
        )

    async def find_task_by_name(self, task_name: str) -> CvatVideoStatus:
        creds = self._config.get_cvat_credentials()
        if creds is None:
            return CvatVideoStatus.not_found()

        cached = self._task_cache.get(task_name)
        if cached is not None and self._clock() < cached.expires_at_ms:
            return cached.status

        try:
            async with self._client_factory() as client:
                creds = await self._session.ensure_authenticated(client)
                data = await self._get_json(client, f"{creds.url}/api/tasks", params={"name": task_name})
                results = data.get("results") if isinstance(data, dict) else None
                # The name filter on the server is a substring match.
                exact = [t for t in (results or []) if isinstance(t, dict) and t.get("name") == task_name]
                occurrences = list(
                    await asyncio.gather(*(self._occurrence(client, creds, t) for t in exact))
                )
        except RemoteUnavailableError as exc:
            log("cvat", "task lookup for %r: %s", task_name, exc, level=logging.WARNING)
            return CvatVideoStatus.not_found()
        except (
            httpx.HTTPError,
            ValueError,
            KeyError,
            TypeError,
            AttributeError,
            AuthenticationFailedError,
            NotConfiguredError,
        ) as exc:
            log("cvat", "failed to query CVAT for %r: %s", task_name, exc, level=logging.ERROR)
            return CvatVideoStatus.not_found()

        status = self.summarize(occurrences)
        self._task_cache[task_name] = TaskCacheEntry(
            status=status,
            expires_at_ms=self._clock() + creds.cache_timeout_ms,
        )
        return status

    async def check_video_status(self, filename: str) -> CvatVideoStatus:
        return await self.find_task_by_name(task_name_for(filename))

    async def check_videos_status(self, filenames: Iterable[str]) -> dict[str, CvatVideoStatus]:
        """Look up many files, at most ``batch_size`` requests in flight at once."""
        names = list(filenames)
        if not self.is_configured():
            return {name: CvatVideoStatus.not_found() for name in names}
        results: dict[str, CvatVideoStatus] = {}
        for start in range(0, len(names), self._batch_size):
            chunk = names[start:start + self._batch_size]
            statuses = await asyncio.gather(*(self.check_video_status(n) for n in chunk))
            results.update(zip(chunk, statuses))
        return results


__all__ = [
    "BATCH_SIZE",
    "CvatConfigSource",
    "CvatService",
    "CvatSessionManager",
    "NO_PROJECT",
    "TOKEN_TTL_MS",
    "task_name_for",
]
