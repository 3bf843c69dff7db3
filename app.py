from __future__ import annotations
import os
import asyncio
import time
import logging
import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from fastapi import FastAPI, APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.responses import StreamingResponse
from fastapi.middleware.cors import CORSMiddleware

import db
from integrations import (
    CvatService,
    JenkinsService,
    ProcessingRegistry,
    SettingsStore,
    mask_settings,
    plan_send_to_cvat,
)
from integrations.common import env_int, log
from integrations.jenkins import DEFAULT_DIRECT_JOB, DEFAULT_ROI_JOB
from integrations.settings import MASK, SECRET_FIELDS

APP_VERSION = "1.0"

# Global server state
STATE: Dict[str, Any] = {"started_at": time.time()}
STATE["root"] = Path(os.environ.get("VIDEOS_ROOT_PATH", "/data/datasets/raw-recordings")).expanduser()
# Same tree as seen from the host; Jenkins agents receive these paths.
STATE["host_root"] = os.environ.get("VIDEOS_HOST_PATH") or str(STATE["root"])


def _media_exts() -> set[str]:
    """
    Allowed video extensions (lowercased with dot).
    Configure via MEDIA_EXTS env (comma-separated). Defaults to MP4-only.
    """
    env = os.environ.get("MEDIA_EXTS")
    if env:
        out: set[str] = set()
        for part in env.split(","):
            s = part.strip().lower()
            if not s:
                continue
            if not s.startswith("."):
                s = "." + s
            out.add(s)
        if out:
            return out
    return {".mp4"}


MEDIA_EXTS = _media_exts()


def init_services(db_path: Optional[Path] = None) -> Dict[str, Any]:
    """(Re)create the database connection target and the integration services.

    The CVAT session and lookup caches live on the service instances, so
    calling this again starts from empty caches.
    """
    STATE["db_path"] = db.configure(db_path or db.default_path())
    db.ensure_schema()
    settings = SettingsStore()
    jenkins = JenkinsService(settings)
    STATE["settings"] = settings
    STATE["cvat"] = CvatService(settings)
    STATE["jenkins"] = jenkins
    STATE["processing"] = ProcessingRegistry(jenkins)
    return STATE


init_services()


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    log("browse", "startup: VIDEOS_ROOT_PATH=%s host=%s db=%s", STATE.get("root"), STATE.get("host_root"), STATE.get("db_path"))
    try:
        # Seed the settings row from the environment on first boot.
        STATE["settings"].get_settings()
    except Exception as e:  # pragma: no cover
        log("settings", "failed to initialise settings: %s", e, level=logging.ERROR)
    yield


app = FastAPI(title="Vista", version=APP_VERSION, lifespan=lifespan)
api = APIRouter(prefix="/api")


# -----------------------------
# CORS: allow the UI from other hosts to call the API
# Configure via CORS_ALLOW_ORIGINS (comma-separated). Defaults to * for dev.
# -----------------------------
def _cors_origins() -> list[str]:
    v = os.environ.get("CORS_ALLOW_ORIGINS")
    if not v or not v.strip():
        return ["*"]
    out = [part.strip() for part in v.split(",") if part.strip()]
    return out or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        return JSONResponse(exc.detail, status_code=exc.status_code)
    return JSONResponse({"status": "error", "message": str(exc.detail)}, status_code=exc.status_code)


def safe_join(root: Path, rel: str) -> Path:
    p = (root / rel.lstrip("/")).resolve()
    root = root.resolve()
    try:
        p.relative_to(root)
    except ValueError:
        raise_api_error("Invalid path", status_code=400)
    return p


def _rel_path(p: Path) -> str:
    return p.resolve().relative_to(Path(STATE["root"]).resolve()).as_posix()


def to_host_path(rel: str) -> str:
    host = str(STATE["host_root"]).rstrip("/")
    rel = rel.strip("/")
    return f"{host}/{rel}" if rel else host


def _is_video_name(name: str) -> bool:
    return Path(name).suffix.lower() in MEDIA_EXTS


############################
# Core API
############################

@api.get("/health")
def health():
    return {
        "ok": True,
        "time": time.time(),
        "uptime": max(0.0, time.time() - float(STATE["started_at"])),
        "root": str(STATE.get("root")),
        "host_root": str(STATE.get("host_root")),
        "integrations": STATE["settings"].status(),
        "version": app.version,
        "pid": os.getpid(),
    }


@app.get("/health")
def health_redirect():
    """Compatibility alias: redirect root /health to canonical /api/health."""
    return RedirectResponse(url="/api/health", status_code=307)


# -----------------------------
# Browse / search
# -----------------------------

def _list_directory(base: Path) -> list[dict]:
    items: list[dict] = []
    with os.scandir(base) as it:
        for entry in it:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir():
                    rel = _rel_path(Path(entry.path))
                    st = entry.stat()
                    items.append({
                        "name": entry.name,
                        "type": "directory",
                        "path": rel,
                        "host_path": to_host_path(rel),
                        "modified_at": st.st_mtime,
                    })
                elif entry.is_file() and _is_video_name(entry.name):
                    rel = _rel_path(Path(entry.path))
                    st = entry.stat()
                    items.append({
                        "name": entry.name,
                        "type": "video",
                        "path": rel,
                        "host_path": to_host_path(rel),
                        "size": st.st_size,
                        "modified_at": st.st_mtime,
                    })
            except (OSError, ValueError) as e:
                log("browse", "skipping %s: %s", entry.path, e, level=logging.WARNING)
    return items


def _sort_items(items: list[dict], sort_by: str, sort_order: str) -> list[dict]:
    reverse = sort_order == "desc"
    if sort_by == "date":
        def key(it: dict):
            return it.get("modified_at") or 0.0
    else:
        def key(it: dict):
            return str(it.get("name") or "").casefold()
    dirs = sorted((i for i in items if i["type"] == "directory"), key=key, reverse=reverse)
    vids = sorted((i for i in items if i["type"] != "directory"), key=key, reverse=reverse)
    return dirs + vids


async def _decorate_videos(items: list[dict]) -> None:
    """Attach annotation and processing state to the video entries of one page."""
    videos = [it for it in items if it["type"] == "video"]
    if not videos:
        return
    statuses, processing = await asyncio.gather(
        STATE["cvat"].check_videos_status([v["name"] for v in videos]),
        STATE["processing"].get_for_paths_and_refresh([v["host_path"] for v in videos]),
        return_exceptions=True,
    )
    if isinstance(statuses, Exception):
        log("browse", "annotation lookup failed: %s", statuses, level=logging.ERROR)
        statuses = {}
    if isinstance(processing, Exception):
        log("browse", "processing refresh failed: %s", processing, level=logging.ERROR)
        processing = {}
    for v in videos:
        status = statuses.get(v["name"])
        if status is not None:
            v["annotation"] = status.to_dict()
        info = processing.get(v["host_path"])
        if info is not None:
            v["processing"] = info.to_dict()


@api.get("/videos/browse")
async def videos_browse(
    path: str = Query(default=""),
    page: int = Query(default=1),
    limit: int = Query(default=50),
    sort_by: str = Query(default="name"),
    sort_order: str = Query(default="asc"),
):
    root = Path(STATE["root"])
    base = safe_join(root, path) if path else root.resolve()
    if not base.exists() or not base.is_dir():
        raise_api_error(f"Path not found: {path}", status_code=404)
    page = max(1, int(page))
    limit = min(max(1, env_int("BROWSE_MAX_LIMIT", 100)), max(1, int(limit)))
    sort_by = sort_by if sort_by in ("name", "date") else "name"
    sort_order = sort_order if sort_order in ("asc", "desc") else "asc"

    all_items = _sort_items(_list_directory(base), sort_by, sort_order)
    total = len(all_items)
    start = (page - 1) * limit
    items = all_items[start:start + limit]
    await _decorate_videos(items)
    rel = "" if base == root.resolve() else _rel_path(base)
    return api_success({
        "path": rel,
        "host_path": to_host_path(rel),
        "items": items,
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
        "sort_by": sort_by,
        "sort_order": sort_order,
    })


@api.get("/videos/search")
def videos_search(q: str = Query(default="")):
    query = (q or "").strip()
    if not query:
        return api_success({"query": "", "total": 0, "results": []})
    needle = query.lower()
    cap = max(1, env_int("BROWSE_SEARCH_MAX_RESULTS", 100))
    root = Path(STATE["root"]).resolve()
    results: list[dict] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith(".") or not _is_video_name(name):
                continue
            if needle not in name.lower():
                continue
            rel = _rel_path(Path(dirpath) / name)
            results.append({
                "name": name,
                "path": rel,
                "host_path": to_host_path(rel),
                "directory": Path(rel).parent.as_posix() if "/" in rel else "",
            })
            if len(results) >= cap:
                break
        if len(results) >= cap:
            break
    return api_success({"query": query, "total": len(results), "results": results})


# -----------------------------
# Streaming
# -----------------------------

def _serve_range(request: Request, file_path: Path, media_type: str):
    if not file_path.exists() or not file_path.is_file():
        raise_api_error("Not found", status_code=404)
    file_size = file_path.stat().st_size
    range_header = request.headers.get("range")

    def file_chunk(start: int, end: int) -> Iterator[bytes]:
        with open(file_path, "rb") as f:
            f.seek(start)
            remaining = end - start + 1
            chunk = 1024 * 1024
            while remaining > 0:
                data = f.read(min(chunk, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data

    if range_header:
        try:
            unit, rng = range_header.split("=", 1)
            if unit.strip().lower() != "bytes":
                raise ValueError(unit)
            start_s, end_s = rng.split("-", 1)
            if start_s:
                start = int(start_s)
                end = int(end_s) if end_s else file_size - 1
            else:
                # Suffix range: the last N bytes.
                start = max(0, file_size - int(end_s))
                end = file_size - 1
            end = min(end, file_size - 1)
            if start > end or start < 0:
                raise ValueError(range_header)
        except ValueError:
            raise_api_error("Invalid Range", status_code=416, data={"size": file_size})
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
            "Content-Type": media_type,
        }
        return StreamingResponse(file_chunk(start, end), status_code=206, headers=headers)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Type": media_type,
        "Content-Length": str(file_size),
    }
    return StreamingResponse(file_chunk(0, file_size - 1), status_code=200, headers=headers)


@api.get("/stream")
def stream_media(request: Request, path: str = Query(...)):
    file_path = safe_join(Path(STATE["root"]), path)
    if not _is_video_name(file_path.name):
        raise_api_error("Not a video", status_code=400)
    content_type = mimetypes.guess_type(str(file_path))[0] or "video/mp4"
    return _serve_range(request, file_path, content_type)


# -----------------------------
# Settings
# -----------------------------

class SettingsUpdate(BaseModel):  # type: ignore
    model_config = ConfigDict(extra="forbid")

    cvat_url: Optional[str] = None
    cvat_username: Optional[str] = None
    cvat_password: Optional[str] = None
    cvat_cache_timeout_ms: Optional[int] = Field(None, ge=0)
    jenkins_url: Optional[str] = None
    jenkins_username: Optional[str] = None
    jenkins_api_token: Optional[str] = None


@api.get("/settings")
def settings_get():
    return api_success(mask_settings(STATE["settings"].get_settings()))


@api.put("/settings")
def settings_put(update: SettingsUpdate):
    patch = update.model_dump(exclude_unset=True)
    # The UI echoes the masked secret back when it was not edited.
    for key in SECRET_FIELDS:
        if patch.get(key) == MASK:
            patch.pop(key)
    if "cvat_cache_timeout_ms" in patch and patch["cvat_cache_timeout_ms"] is None:
        patch.pop("cvat_cache_timeout_ms")
    settings = STATE["settings"].update_settings(patch)
    if {"cvat_url", "cvat_username", "cvat_password"} & set(patch):
        STATE["cvat"].clear_cache()
    return api_success(mask_settings(settings), message="Settings updated")


@api.get("/settings/status")
def settings_status():
    return api_success(STATE["settings"].status())


# -----------------------------
# CVAT
# -----------------------------

class CvatBatchRequest(BaseModel):  # type: ignore
    filenames: List[str] = Field(default_factory=list)


@api.get("/cvat/status")
async def cvat_status(filename: str = Query(...)):
    status = await STATE["cvat"].check_video_status(filename)
    return api_success(status.to_dict())


@api.post("/cvat/status")
async def cvat_status_batch(req: CvatBatchRequest):
    statuses = await STATE["cvat"].check_videos_status(req.filenames)
    return api_success({name: st.to_dict() for name, st in statuses.items()})


# -----------------------------
# Jenkins
# -----------------------------

class SendToCvatRequest(BaseModel):  # type: ignore
    resource_path: str = Field(..., min_length=1)
    method: Literal["roi", "direct"]
    project: str
    org: str
    model_name: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0, le=1)
    padding: Optional[int] = Field(None, ge=0)
    assignee_id: Optional[str] = None


@api.get("/jenkins/status")
def jenkins_status():
    return api_success({"configured": STATE["jenkins"].is_configured()})


@api.post("/jenkins/trigger/send-to-cvat")
async def jenkins_send_to_cvat(req: SendToCvatRequest):
    log("jenkins", "send to CVAT request: %s - %s", req.method, req.resource_path)
    job_name, parameters = plan_send_to_cvat(
        video_path=req.resource_path,
        method=req.method,
        cvat_project=req.project,
        cvat_org=req.org,
        model_name=req.model_name,
        confidence=req.confidence,
        padding=req.padding,
        assignee_id=req.assignee_id,
        roi_job=os.environ.get("JENKINS_ROI_JOB") or DEFAULT_ROI_JOB,
        direct_job=os.environ.get("JENKINS_DIRECT_JOB") or DEFAULT_DIRECT_JOB,
    )
    jenkins: JenkinsService = STATE["jenkins"]
    if not jenkins.is_configured():
        return api_error(
            "Jenkins not configured",
            status_code=400,
            data={"success": False, "error": "Jenkins not configured", "job_name": job_name},
        )
    result = await jenkins.trigger_build(job_name, parameters)
    payload = {**result.to_dict(), "job_name": job_name}
    if not result.success:
        return api_error(result.error or "Failed to trigger build", status_code=502, data=payload)
    registry: ProcessingRegistry = STATE["processing"]
    registry.start_processing(req.resource_path, job_name, req.method, result.queue_url)
    if result.build_url:
        registry.mark_building(req.resource_path, result.build_url)
    return api_success(payload, message="Build queued")


# -----------------------------
# Processing
# -----------------------------

@api.get("/processing")
def processing_list():
    records = STATE["processing"].get_all_active()
    return api_success({"items": [r.to_dict() for r in records], "total": len(records)})


@api.delete("/processing/{record_id}")
def processing_remove(record_id: str):
    if not STATE["processing"].remove(record_id):
        raise_api_error(f"Processing record not found: {record_id}", status_code=404)
    return api_success({"removed": record_id})


app.include_router(api)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
    host = os.environ.get("HOST", "127.0.0.1")
    port = env_int("PORT", 3001)
    uvicorn.run("app:app", host=host, port=port, reload=False)
