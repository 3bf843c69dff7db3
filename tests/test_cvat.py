import asyncio
import logging

import httpx
import pytest

from integrations.common import AuthenticationFailedError
from integrations.cvat import NO_PROJECT, TOKEN_TTL_MS, CvatService, task_name_for

from .helpers import FakeClock, FakeCvat, StaticConfig, cvat_creds


def _service(fake: FakeCvat, config: StaticConfig | None = None, clock: FakeClock | None = None) -> CvatService:
    return CvatService(
        config or StaticConfig(cvat=cvat_creds()),
        client_factory=fake.client_factory,
        clock=clock or FakeClock(),
    )


def test_task_name_strips_only_the_last_extension():
    assert task_name_for("cam1.mp4") == "cam1"
    assert task_name_for("belt.run.2.mp4") == "belt.run.2"
    assert task_name_for("noext") == "noext"


def test_unconfigured_lookup_is_not_found_without_requests():
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": None}])
    svc = _service(fake, StaticConfig(cvat=None))
    status = asyncio.run(svc.check_video_status("cam1.mp4"))
    assert status.exists is False
    assert status.occurrences == []
    assert fake.requests == []


def test_found_task_reports_project_stage_and_url():
    fake = FakeCvat(
        tasks=[{"id": 11, "name": "cam1", "project_id": 3}],
        projects={3: "Belts"},
        jobs={11: ["annotation", "validation"]},
    )
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert status.exists is True
    assert status.has_duplicate_in_same_project is False
    occ = status.occurrences[0]
    assert occ.task_id == 11
    assert occ.task_url == "http://cvat.test/tasks/11"
    assert occ.project_id == 3
    assert occ.project_name == "Belts"
    assert occ.stage == "annotation"
    assert "duplicate_project_names" not in status.to_dict()


def test_lookup_keeps_only_exact_name_matches():
    fake = FakeCvat(tasks=[
        {"id": 1, "name": "cam1", "project_id": None},
        {"id": 2, "name": "cam10", "project_id": None},
        {"id": 3, "name": "old-cam1", "project_id": None},
    ])
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert [occ.task_id for occ in status.occurrences] == [1]


def test_task_without_project_uses_placeholder_and_skips_project_lookup():
    fake = FakeCvat(tasks=[{"id": 5, "name": "cam1", "project_id": None}])
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    occ = status.occurrences[0]
    assert occ.project_id is None
    assert occ.project_name == NO_PROJECT
    assert occ.stage is None
    assert fake.count("/api/projects/5") == 0


def test_duplicates_in_same_project_are_flagged():
    fake = FakeCvat(
        tasks=[
            {"id": 1, "name": "cam1", "project_id": 3},
            {"id": 2, "name": "cam1", "project_id": 3},
            {"id": 3, "name": "cam1", "project_id": 4},
        ],
        projects={3: "Belts", 4: "Rails"},
    )
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert len(status.occurrences) == 3
    assert status.has_duplicate_in_same_project is True
    assert status.duplicate_project_names == ["Belts"]
    assert status.to_dict()["duplicate_project_names"] == ["Belts"]


def test_same_name_in_different_projects_is_not_a_duplicate():
    fake = FakeCvat(
        tasks=[
            {"id": 1, "name": "cam1", "project_id": 3},
            {"id": 2, "name": "cam1", "project_id": 4},
        ],
        projects={3: "Belts", 4: "Rails"},
    )
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert status.has_duplicate_in_same_project is False
    assert status.duplicate_project_names is None


def test_lookup_results_are_cached_until_the_timeout_passes():
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": None}])
    clock = FakeClock()
    svc = _service(fake, clock=clock)

    async def scenario():
        await svc.check_video_status("cam1.mp4")
        await svc.check_video_status("cam1.mp4")
        assert fake.count("/api/tasks") == 1
        clock.advance(5001)
        await svc.check_video_status("cam1.mp4")
        assert fake.count("/api/tasks") == 2

    asyncio.run(scenario())


def test_zero_cache_timeout_always_queries():
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": None}])
    svc = _service(fake, StaticConfig(cvat=cvat_creds(cache_timeout_ms=0)))

    async def scenario():
        await svc.check_video_status("cam1.mp4")
        await svc.check_video_status("cam1.mp4")

    asyncio.run(scenario())
    assert fake.count("/api/tasks") == 2


def test_failed_lookup_is_not_cached():
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": None}])
    fake.tasks_status = 500
    svc = _service(fake)

    async def scenario():
        first = await svc.check_video_status("cam1.mp4")
        assert first.exists is False
        fake.tasks_status = 200
        second = await svc.check_video_status("cam1.mp4")
        assert second.exists is True

    asyncio.run(scenario())
    assert fake.count("/api/tasks") == 2


def test_session_is_reused_until_the_token_expires():
    fake = FakeCvat(tasks=[
        {"id": 1, "name": "a", "project_id": None},
        {"id": 2, "name": "b", "project_id": None},
    ])
    clock = FakeClock()
    svc = _service(fake, clock=clock)

    async def scenario():
        await svc.check_video_status("a.mp4")
        await svc.check_video_status("b.mp4")
        assert fake.count("/api/auth/login") == 1
        clock.advance(TOKEN_TTL_MS + 1)
        await svc.check_video_status("a.mp4")
        assert fake.count("/api/auth/login") == 2

    asyncio.run(scenario())


def test_changed_username_forces_a_new_login():
    fake = FakeCvat(tasks=[
        {"id": 1, "name": "a", "project_id": None},
        {"id": 2, "name": "b", "project_id": None},
    ])
    config = StaticConfig(cvat=cvat_creds())
    svc = _service(fake, config)

    async def scenario():
        await svc.check_video_status("a.mp4")
        config.cvat = cvat_creds(username="reviewer")
        await svc.check_video_status("b.mp4")

    asyncio.run(scenario())
    logins = [r for r in fake.requests if r.url.path == "/api/auth/login"]
    assert len(logins) == 2
    assert b"reviewer" in logins[1].content
    assert svc.session.session.binding.username == "reviewer"


def test_login_failure_reports_not_found_and_clears_session():
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": None}])
    fake.login_status = 401
    svc = _service(fake)
    status = asyncio.run(svc.check_video_status("cam1.mp4"))
    assert status.exists is False
    assert svc.session.session is None
    assert fake.count("/api/tasks") == 0


def test_project_names_are_cached_but_failures_are_not():
    fake = FakeCvat(
        tasks=[
            {"id": 1, "name": "a", "project_id": 3},
            {"id": 2, "name": "b", "project_id": 3},
            {"id": 3, "name": "c", "project_id": 3},
        ],
        projects={3: "Belts"},
    )
    fake.project_status = 500
    svc = _service(fake)

    async def scenario():
        first = await svc.check_video_status("a.mp4")
        assert first.occurrences[0].project_name == "Project #3"
        fake.project_status = 200
        second = await svc.check_video_status("b.mp4")
        assert second.occurrences[0].project_name == "Belts"
        third = await svc.check_video_status("c.mp4")
        assert third.occurrences[0].project_name == "Belts"

    asyncio.run(scenario())
    assert fake.count("/api/projects/3") == 2


def test_batch_lookup_for_unconfigured_cvat_makes_no_requests():
    fake = FakeCvat()
    svc = _service(fake, StaticConfig(cvat=None))
    results = asyncio.run(svc.check_videos_status(["a.mp4", "b.mp4"]))
    assert set(results) == {"a.mp4", "b.mp4"}
    assert not any(s.exists for s in results.values())
    assert fake.requests == []


def test_batch_lookup_keeps_at_most_ten_searches_in_flight():
    fake = FakeCvat(tasks=[{"id": i, "name": f"v{i}", "project_id": None} for i in range(25)])
    state = {"inflight": 0, "peak": 0}

    async def handler(request):
        if request.url.path == "/api/tasks":
            state["inflight"] += 1
            state["peak"] = max(state["peak"], state["inflight"])
            await asyncio.sleep(0.01)
            state["inflight"] -= 1
        return fake.handler(request)

    svc = CvatService(
        StaticConfig(cvat=cvat_creds()),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    names = [f"v{i}.mp4" for i in range(25)]
    results = asyncio.run(svc.check_videos_status(names))
    assert list(results) == names
    assert all(results[n].exists for n in names)
    assert [results[n].occurrences[0].task_id for n in names] == list(range(25))
    assert 1 <= state["peak"] <= 10


def test_tasks_without_project_share_one_duplicate_group():
    fake = FakeCvat(tasks=[
        {"id": 1, "name": "cam1", "project_id": None},
        {"id": 2, "name": "cam1", "project_id": None},
    ])
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert status.has_duplicate_in_same_project is True
    assert status.duplicate_project_names == [NO_PROJECT]


def test_cold_batch_logs_in_once():
    fake = FakeCvat(tasks=[{"id": i, "name": f"v{i}", "project_id": None} for i in range(10)])

    async def handler(request):
        if request.url.path == "/api/auth/login":
            await asyncio.sleep(0.01)
        return fake.handler(request)

    svc = CvatService(
        StaticConfig(cvat=cvat_creds()),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    results = asyncio.run(svc.check_videos_status([f"v{i}.mp4" for i in range(10)]))
    assert all(s.exists for s in results.values())
    assert fake.count("/api/auth/login") == 1
    assert svc.session.session.token == "tok-1"


def test_failed_relogin_leaves_no_session():
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": None}])
    clock = FakeClock()
    svc = _service(fake, clock=clock)

    async def scenario():
        await svc.check_video_status("cam1.mp4")
        assert svc.session.session is not None
        fake.login_status = 500
        clock.advance(TOKEN_TTL_MS + 1)
        await svc.session.ensure_authenticated()

    with pytest.raises(AuthenticationFailedError, match="500"):
        asyncio.run(scenario())
    assert svc.session.session is None


def test_job_entry_that_is_not_an_object_gives_no_stage():
    fake = FakeCvat(tasks=[{"id": 11, "name": "cam1", "project_id": None}])
    fake.jobs_payload = {"results": [None]}
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert status.exists is True
    assert status.occurrences[0].task_id == 11
    assert status.occurrences[0].stage is None


def test_jobs_payload_without_a_list_gives_no_stage():
    fake = FakeCvat(tasks=[{"id": 11, "name": "cam1", "project_id": None}])
    fake.jobs_payload = {"results": "nope"}
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert status.exists is True
    assert status.occurrences[0].stage is None


def test_unavailable_project_lookup_is_logged(monkeypatch, caplog):
    monkeypatch.delenv("LOG_ALL", raising=False)
    monkeypatch.delenv("LOG_CVAT", raising=False)
    caplog.set_level(logging.WARNING, logger="vista")
    fake = FakeCvat(tasks=[{"id": 1, "name": "cam1", "project_id": 3}], projects={3: "Belts"})
    fake.project_status = 503
    status = asyncio.run(_service(fake).check_video_status("cam1.mp4"))
    assert status.occurrences[0].project_name == "Project #3"
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("failed to get project name for 3" in m and "503" in m for m in warnings)
