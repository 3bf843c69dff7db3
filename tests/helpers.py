from __future__ import annotations

from typing import Any, Optional
from urllib.parse import parse_qs

import httpx

from integrations.models import CvatCredentials, JenkinsCredentials

CVAT_URL = "http://cvat.test"
JENKINS_URL = "http://jenkins.test"


class StaticConfig:
    """Credential source with fixed, mutable values."""

    def __init__(self, cvat: Optional[CvatCredentials] = None, jenkins: Optional[JenkinsCredentials] = None):
        self.cvat = cvat
        self.jenkins = jenkins

    def get_cvat_credentials(self) -> Optional[CvatCredentials]:
        return self.cvat

    def get_jenkins_credentials(self) -> Optional[JenkinsCredentials]:
        return self.jenkins


def cvat_creds(**overrides: Any) -> CvatCredentials:
    values = {"url": CVAT_URL, "username": "annotator", "password": "secret", "cache_timeout_ms": 5000}
    values.update(overrides)
    return CvatCredentials(**values)


def jenkins_creds(**overrides: Any) -> JenkinsCredentials:
    values = {"url": JENKINS_URL, "username": "ci", "api_token": "token"}
    values.update(overrides)
    return JenkinsCredentials(**values)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, amount: float) -> None:
        self.now += amount


class FakeCvat:
    """In-memory CVAT REST API served through httpx.MockTransport."""

    def __init__(self, tasks=None, projects=None, jobs=None):
        self.tasks: list[dict] = list(tasks or [])
        self.projects: dict[int, str] = dict(projects or {})
        self.jobs: dict[int, list[str]] = dict(jobs or {})
        self.token = "tok-1"
        self.login_status = 200
        self.tasks_status = 200
        self.project_status = 200
        self.jobs_payload: Any = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/auth/login" and request.method == "POST":
            if self.login_status != 200:
                return httpx.Response(self.login_status, json={"detail": "invalid credentials"})
            return httpx.Response(200, json={"key": self.token})
        if request.headers.get("Authorization") != f"Token {self.token}":
            return httpx.Response(401, json={"detail": "not authenticated"})
        if path == "/api/tasks":
            if self.tasks_status != 200:
                return httpx.Response(self.tasks_status)
            name = request.url.params.get("name", "")
            return httpx.Response(200, json={"results": [t for t in self.tasks if name in t["name"]]})
        if path.startswith("/api/projects/"):
            project_id = int(path.rsplit("/", 1)[1])
            if self.project_status != 200 or project_id not in self.projects:
                return httpx.Response(self.project_status if self.project_status != 200 else 404)
            return httpx.Response(200, json={"id": project_id, "name": self.projects[project_id]})
        if path == "/api/jobs":
            if self.jobs_payload is not None:
                return httpx.Response(200, json=self.jobs_payload)
            task_id = int(request.url.params["task_id"])
            return httpx.Response(200, json={"results": [{"stage": s} for s in self.jobs.get(task_id, [])]})
        return httpx.Response(404)

    def client_factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)


class FakeJenkins:
    """Jenkins stand-in; ``route`` registers canned answers for absolute URLs.

    Each answer is a dict (200 JSON) or an int (bare status). When several
    answers are registered they are served in order, repeating the last one.
    """

    def __init__(self):
        self.crumb: Optional[dict] = {"crumbRequestField": "Jenkins-Crumb", "crumb": "c0ffee"}
        self.trigger_status = 201
        self.trigger_body = ""
        self.queue_location: Optional[str] = f"{JENKINS_URL}/queue/item/7/"
        self.routes: dict[str, list] = {}
        self.down = False
        self.requests: list[httpx.Request] = []

    def route(self, url: str, *answers: Any) -> None:
        self.routes[url] = list(answers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if path == "/crumbIssuer/api/json":
            if self.crumb is None:
                return httpx.Response(404)
            return httpx.Response(200, json=self.crumb)
        if path.endswith("/buildWithParameters"):
            headers = {}
            if self.trigger_status == 201 and self.queue_location:
                headers["Location"] = self.queue_location
            return httpx.Response(self.trigger_status, text=self.trigger_body, headers=headers)
        answers = self.routes.get(str(request.url))
        if not answers:
            return httpx.Response(404)
        answer = answers.pop(0) if len(answers) > 1 else answers[0]
        if isinstance(answer, int):
            return httpx.Response(answer)
        return httpx.Response(200, json=answer)

    def client_factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def triggers(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/buildWithParameters")]

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
