"""Persisted integration settings (CVAT and Jenkins credentials).

The settings live in a single ``settings`` row with id ``default``. The row
is created on first access and seeded from the environment (``CVAT_URL``,
``JENKINS_URL`` and friends); after that the database is the source of
truth and edits made through the API take effect on the next call.
"""
from __future__ import annotations

import os
import time
from typing import Any, Mapping, Optional

import db

from .common import env_int, log
from .models import CvatCredentials, JenkinsCredentials

DEFAULT_ID = "default"
MASK = "••••••••"

SETTINGS_FIELDS = (
    "cvat_url",
    "cvat_username",
    "cvat_password",
    "cvat_cache_timeout_ms",
    "jenkins_url",
    "jenkins_username",
    "jenkins_api_token",
)
SECRET_FIELDS = ("cvat_password", "jenkins_api_token")
_URL_FIELDS = ("cvat_url", "jenkins_url")


def _env_seed() -> dict[str, Any]:
    def _s(name: str) -> Optional[str]:
        v = os.environ.get(name)
        return v.strip() if v and v.strip() else None

    return {
        "cvat_url": _s("CVAT_URL"),
        "cvat_username": _s("CVAT_USERNAME"),
        "cvat_password": _s("CVAT_PASSWORD"),
        "cvat_cache_timeout_ms": max(0, env_int("CVAT_CACHE_TIMEOUT_MS", 5000)),
        "jenkins_url": _s("JENKINS_URL"),
        "jenkins_username": _s("JENKINS_USERNAME"),
        "jenkins_api_token": _s("JENKINS_API_TOKEN"),
    }


def _normalize(key: str, value: Any) -> Any:
    if key == "cvat_cache_timeout_ms":
        return max(0, int(value))
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if key in _URL_FIELDS:
        s = s.rstrip("/")
    return s


def mask_settings(settings: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(settings)
    for key in SECRET_FIELDS:
        out[key] = MASK if out.get(key) else None
    return out


class SettingsStore:
    """Configuration source backed by the ``settings`` table."""

    def __init__(self, *, row_id: str = DEFAULT_ID) -> None:
        self._row_id = row_id

    def _read(self) -> Optional[dict[str, Any]]:
        with db.session() as conn:
            row = conn.execute("SELECT * FROM settings WHERE id = ?", (self._row_id,)).fetchone()
        if row is None:
            return None
        return {key: row[key] for key in SETTINGS_FIELDS}

    def _ensure_row(self) -> dict[str, Any]:
        current = self._read()
        if current is not None:
            return current
        seed = _env_seed()
        cols = ", ".join(("id",) + SETTINGS_FIELDS + ("updated_at",))
        marks = ", ".join("?" for _ in range(len(SETTINGS_FIELDS) + 2))
        with db.session() as conn:
            conn.execute(
                f"INSERT OR IGNORE INTO settings ({cols}) VALUES ({marks})",
                (self._row_id, *[seed[k] for k in SETTINGS_FIELDS], time.time()),
            )
        return self._read() or seed

    def get_settings(self) -> dict[str, Any]:
        """Return the current settings, creating the default row if needed."""
        return self._ensure_row()

    def update_settings(self, patch: Mapping[str, Any]) -> dict[str, Any]:
        """Apply the supplied keys only; unknown keys raise ``KeyError``."""
        unknown = [k for k in patch if k not in SETTINGS_FIELDS]
        if unknown:
            raise KeyError(f"unknown settings: {', '.join(sorted(unknown))}")
        self._ensure_row()
        changes = {k: _normalize(k, v) for k, v in patch.items()}
        if changes:
            assignments = ", ".join(f"{k} = ?" for k in changes)
            with db.session() as conn:
                conn.execute(
                    f"UPDATE settings SET {assignments}, updated_at = ? WHERE id = ?",
                    (*changes.values(), time.time(), self._row_id),
                )
            log("settings", "settings updated: %s", ", ".join(sorted(changes)))
        return self._ensure_row()

    def get_cvat_credentials(self) -> Optional[CvatCredentials]:
        s = self._ensure_row()
        if not s.get("cvat_url") or not s.get("cvat_username") or not s.get("cvat_password"):
            return None
        return CvatCredentials(
            url=str(s["cvat_url"]).rstrip("/"),
            username=str(s["cvat_username"]),
            password=str(s["cvat_password"]),
            cache_timeout_ms=int(s.get("cvat_cache_timeout_ms") or 0),
        )

    def get_jenkins_credentials(self) -> Optional[JenkinsCredentials]:
        s = self._ensure_row()
        if not s.get("jenkins_url") or not s.get("jenkins_username") or not s.get("jenkins_api_token"):
            return None
        return JenkinsCredentials(
            url=str(s["jenkins_url"]).rstrip("/"),
            username=str(s["jenkins_username"]),
            api_token=str(s["jenkins_api_token"]),
        )

    def status(self) -> dict[str, bool]:
        s = self.get_settings()
        return {
            "cvat": bool(s.get("cvat_url") and s.get("cvat_username") and s.get("cvat_password")),
            "jenkins": bool(s.get("jenkins_url") and s.get("jenkins_username") and s.get("jenkins_api_token")),
        }


__all__ = ["MASK", "SECRET_FIELDS", "SETTINGS_FIELDS", "SettingsStore", "mask_settings"]
