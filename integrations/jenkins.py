"""Jenkins integration: triggering parameterized builds and polling them.

Queue items and builds are polled through their ``api/json`` endpoints.
Reads never raise; each maps failures to the least committal answer so a
flaky Jenkins cannot break a directory listing.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol
from urllib.parse import quote

import httpx

from .common import ClientFactory, default_client_factory, log, truncate
from .models import BuildStatusInfo, JenkinsCredentials, LastBuildInfo, QueueItemInfo, TriggerBuildResult

QUEUE_WAIT_SECONDS = 15.0
QUEUE_POLL_INTERVAL = 1.0

METHOD_ROI = "roi"
METHOD_DIRECT = "direct"
DEFAULT_ROI_JOB = "pt-models/yolo_roi_extractor"
DEFAULT_DIRECT_JOB = "pt-models/cvat-video-uploader"


class JenkinsConfigSource(Protocol):
    def get_jenkins_credentials(self) -> Optional[JenkinsCredentials]:
        ...


def encode_job_path(job_name: str) -> str:
    """``folder/job name`` -> ``folder/job/job%20name`` (nested folders)."""
    return "/job/".join(quote(part, safe="") for part in job_name.split("/"))


def with_trailing_slash(resource_url: str) -> str:
    return resource_url if resource_url.endswith("/") else resource_url + "/"


def _basic_auth(creds: JenkinsCredentials) -> httpx.BasicAuth:
    return httpx.BasicAuth(creds.username, creds.api_token)


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _param_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def plan_send_to_cvat(
    *,
    video_path: str,
    method: str,
    cvat_project: str,
    cvat_org: str,
    model_name: Optional[str] = None,
    confidence: Optional[float] = None,
    padding: Optional[int] = None,
    assignee_id: Optional[str] = None,
    roi_job: str = DEFAULT_ROI_JOB,
    direct_job: str = DEFAULT_DIRECT_JOB,
) -> tuple[str, dict[str, str]]:
    """Pick the Jenkins job for ``method`` and build its parameter map."""
    if method == METHOD_ROI:
        job_name = roi_job
        params = {
            "VIDEO_PATH": video_path,
            "CVAT_PROJECT": cvat_project,
            "CVAT_ORG": cvat_org,
            "MODEL_NAME": model_name or "belt.pt",
            "CONFIDENCE": _param_number(0.5 if confidence is None else confidence),
            "PADDING": _param_number(30 if padding is None else padding),
        }
    elif method == METHOD_DIRECT:
        job_name = direct_job
        folder, _sep, filename = video_path.rpartition("/")
        params = {
            "VIDEO_PATH": folder,
            "SPECIFIC_VIDEO": filename,
            "CVAT_PROJECT": cvat_project,
            "CVAT_ORG": cvat_org,
        }
    else:
        raise ValueError(f"unknown method: {method}")
    if assignee_id:
        params["ASSIGNEE_ID"] = assignee_id
    return job_name, params


class JenkinsService:
    def __init__(
        self,
        config: JenkinsConfigSource,
        *,
        client_factory: ClientFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        monotonic: Callable[[], float] | None = None,
        queue_wait_seconds: float = QUEUE_WAIT_SECONDS,
        poll_interval: float = QUEUE_POLL_INTERVAL,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or default_client_factory
        self._sleep = sleep or asyncio.sleep
        self._monotonic = monotonic or time.monotonic
        self._queue_wait_seconds = queue_wait_seconds
        self._poll_interval = poll_interval

    def is_configured(self) -> bool:
        return self._config.get_jenkins_credentials() is not None

    async def get_crumb(self, client: httpx.AsyncClient, creds: JenkinsCredentials) -> Optional[tuple[str, str]]:
        """Fetch the CSRF crumb; ``None`` when Jenkins has CSRF protection disabled."""
        try:
            resp = await client.get(f"{creds.url}/crumbIssuer/api/json", auth=_basic_auth(creds))
            if not resp.is_success:
                return None
            data = resp.json()
            field, crumb = data.get("crumbRequestField"), data.get("crumb")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            log("jenkins", "failed to get CSRF crumb: %s", exc, level=logging.WARNING)
            return None
        if not field or not crumb:
            return None
        return str(field), str(crumb)

    async def trigger_build(self, job_name: str, parameters: Mapping[str, str]) -> TriggerBuildResult:
        creds = self._config.get_jenkins_credentials()
        if creds is None:
            return TriggerBuildResult(
                success=False,
                error="Jenkins not configured. Go to Settings to configure Jenkins credentials.",
            )
        url = f"{creds.url}/job/{encode_job_path(job_name)}/buildWithParameters"
        try:
            async with self._client_factory() as client:
                crumb = await self.get_crumb(client, creds)
                headers = {"Content-Type": "application/x-www-form-urlencoded"}
                if crumb:
                    headers[crumb[0]] = crumb[1]
                log("jenkins", "triggering build %s with params %s", job_name, dict(parameters))
                resp = await client.post(url, data=dict(parameters), headers=headers, auth=_basic_auth(creds))
                if resp.status_code != 201:
                    body = resp.text
                    log("jenkins", "failed to trigger %s: %s - %s", job_name, resp.status_code, body,
                        level=logging.ERROR)
                    return TriggerBuildResult(
                        success=False,
                        error=f"Jenkins returned {resp.status_code}: {truncate(body, 200)}",
                    )
                queue_url = resp.headers.get("Location") or None
                log("jenkins", "build queued: %s", queue_url)
                build_url: Optional[str] = None
                if queue_url:
                    build_url = await self.wait_for_build_url(queue_url, client=client, creds=creds)
                    if build_url:
                        log("jenkins", "build started: %s", build_url)
                    else:
                        log("jenkins", "no build url for %s in time, tracking via queue", queue_url,
                            level=logging.WARNING)
                return TriggerBuildResult(success=True, queue_url=queue_url, build_url=build_url)
        except httpx.HTTPError as exc:
            log("jenkins", "error triggering %s: %s", job_name, exc, level=logging.ERROR)
            return TriggerBuildResult(success=False, error=str(exc) or exc.__class__.__name__)

    async def wait_for_build_url(
        self,
        queue_url: str,
        *,
        client: httpx.AsyncClient,
        creds: JenkinsCredentials,
    ) -> Optional[str]:
        """Poll a queue item until it has an executable, for at most the queue wait window."""
        deadline = self._monotonic() + self._queue_wait_seconds
        while self._monotonic() < deadline:
            try:
                info = await self._queue_item(client, creds, queue_url)
            except (httpx.HTTPError, ValueError, AttributeError) as exc:
                log("jenkins", "error polling queue %s: %s", queue_url, exc, level=logging.WARNING)
                return None
            if info.missing or info.cancelled:
                return None
            if info.build_url:
                return info.build_url
            await self._sleep(self._poll_interval)
        return None

    async def _queue_item(self, client: httpx.AsyncClient, creds: JenkinsCredentials, queue_url: str) -> QueueItemInfo:
        resp = await client.get(f"{with_trailing_slash(queue_url)}api/json", auth=_basic_auth(creds))
        if not resp.is_success:
            return QueueItemInfo(waiting=False, cancelled=False, missing=True)
        data = _as_dict(resp.json())
        if data.get("cancelled"):
            return QueueItemInfo(waiting=False, cancelled=True)
        executable = data.get("executable") or {}
        if isinstance(executable, dict) and executable.get("url"):
            return QueueItemInfo(waiting=False, cancelled=False, build_url=str(executable["url"]))
        return QueueItemInfo(waiting=True, cancelled=False)

    async def get_queue_item(self, queue_url: str) -> QueueItemInfo:
        creds = self._config.get_jenkins_credentials()
        if creds is None:
            return QueueItemInfo(waiting=False, cancelled=False)
        try:
            async with self._client_factory() as client:
                return await self._queue_item(client, creds, queue_url)
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            log("jenkins", "failed to get queue item %s: %s", queue_url, exc, level=logging.WARNING)
            return QueueItemInfo(waiting=False, cancelled=False)

    async def get_build_status(self, build_url: str) -> BuildStatusInfo:
        """A non-2xx answer retires the build as ``UNKNOWN``; a network error does not."""
        creds = self._config.get_jenkins_credentials()
        if creds is None:
            return BuildStatusInfo(building=False, finished=False)
        try:
            async with self._client_factory() as client:
                resp = await client.get(f"{with_trailing_slash(build_url)}api/json", auth=_basic_auth(creds))
                if not resp.is_success:
                    return BuildStatusInfo(building=False, finished=True, result="UNKNOWN")
                data = _as_dict(resp.json())
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            log("jenkins", "failed to get build status %s: %s", build_url, exc, level=logging.WARNING)
            return BuildStatusInfo(building=False, finished=False)
        building = data.get("building") is True
        result = data.get("result")
        return BuildStatusInfo(
            building=building,
            finished=data.get("building") is False and result is not None,
            result=str(result) if result else None,
        )

    async def get_last_build(self, job_name: str) -> Optional[LastBuildInfo]:
        """Newest build of ``job_name`` with the id of the queue item that started it."""
        creds = self._config.get_jenkins_credentials()
        if creds is None:
            return None
        url = f"{creds.url}/job/{encode_job_path(job_name)}/lastBuild/api/json"
        try:
            async with self._client_factory() as client:
                resp = await client.get(url, auth=_basic_auth(creds))
                if not resp.is_success:
                    log("jenkins", "failed to get last build for %s: %s", job_name, resp.status_code,
                        level=logging.WARNING)
                    return None
                data = _as_dict(resp.json())
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            log("jenkins", "error getting last build for %s: %s", job_name, exc, level=logging.WARNING)
            return None
        if not data.get("url"):
            return None
        queue_id = data.get("queueId")
        return LastBuildInfo(
            url=str(data["url"]),
            queue_id=queue_id if isinstance(queue_id, int) and not isinstance(queue_id, bool) else None,
        )


__all__ = [
    "DEFAULT_DIRECT_JOB",
    "DEFAULT_ROI_JOB",
    "JenkinsConfigSource",
    "JenkinsService",
    "METHOD_DIRECT",
    "METHOD_ROI",
    "QUEUE_POLL_INTERVAL",
    "QUEUE_WAIT_SECONDS",
    "with_trailing_slash",
    "encode_job_path",
    "plan_send_to_cvat",
]
