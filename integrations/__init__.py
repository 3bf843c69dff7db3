"""CVAT and Jenkins integrations for the Vista dashboard."""

from .common import (
    AuthenticationFailedError,
    IntegrationError,
    NotConfiguredError,
    RemoteUnavailableError,
)
from .cvat import CvatService, CvatSessionManager, task_name_for
from .jenkins import JenkinsService, encode_job_path, plan_send_to_cvat
from .processing import ProcessingRegistry
from .settings import SettingsStore, mask_settings

__all__ = [
    "AuthenticationFailedError",
    "CvatService",
    "CvatSessionManager",
    "IntegrationError",
    "JenkinsService",
    "NotConfiguredError",
    "ProcessingRegistry",
    "RemoteUnavailableError",
    "SettingsStore",
    "encode_job_path",
    "mask_settings",
    "plan_send_to_cvat",
    "task_name_for",
]
