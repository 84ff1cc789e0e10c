"""Data models for dropstage."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from dropstage.streams import ByteStream, Sink

# Fixed identity of the emulated platform application. The values only need
# to be stable and well-formed; the build pipeline never resolves them.
DEFAULT_APP_ID = "01d31c12-d066-495e-aca2-8d3403165360"
DEFAULT_APP_VERSION = "2b860df9-a0a1-474c-b02f-5985f53ea0bb"
DEFAULT_SPACE_ID = "18300c1c-1aa4-4ae7-81e6-ae59c6cdbaf1"
DEFAULT_SPACE_NAME = "cflocal-space"


# ---------------------------------------------------------------------------
# Local application config (local.yml)
# ---------------------------------------------------------------------------


class Service(BaseModel):
    """One service binding as it appears in ``VCAP_SERVICES``."""

    model_config = {"extra": "allow"}

    name: str
    label: str
    tags: list[str] = []
    plan: str
    credentials: dict[str, Any] = {}
    provider: str | None = None
    syslog_drain_url: str | None = None
    volume_mounts: list[dict[str, Any]] = []


# Keyed by service label (offering), as in VCAP_SERVICES
Services = dict[str, list[Service]]


class AppConfig(BaseModel):
    """Per-application settings declared in ``local.yml``."""

    model_config = {"extra": "forbid"}

    name: str
    buildpack: str | None = None
    buildpacks: list[str] = []
    command: str | None = None
    disk_quota: str | None = None
    memory: str | None = None
    staging_env: dict[str, str] = Field(default_factory=dict)
    running_env: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    services: Services | None = None


class LocalYML(BaseModel):
    applications: list[AppConfig] = []


# ---------------------------------------------------------------------------
# Runtime types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApplicationDescriptor:
    """Identity and limits of the application, emulating ``VCAP_APPLICATION``."""

    name: str
    application_id: str = DEFAULT_APP_ID
    version: str = DEFAULT_APP_VERSION
    space_id: str = DEFAULT_SPACE_ID
    space_name: str = DEFAULT_SPACE_NAME
    uris: tuple[str, ...] = ("localhost",)
    fds: int = 16384
    mem: int = 512  # MB
    disk: int = 1024  # MB

    def to_vcap(self) -> dict[str, Any]:
        uris = list(self.uris)
        return {
            "application_id": self.application_id,
            "application_name": self.name,
            "application_uris": uris,
            "application_version": self.version,
            "limits": {"fds": self.fds, "mem": self.mem, "disk": self.disk},
            "name": self.name,
            "space_id": self.space_id,
            "space_name": self.space_name,
            "uris": uris,
            "version": self.version,
        }


def _plain_prefix(text: str) -> str:
    return text


@dataclass
class StageConfig:
    """Everything one ``Stager.stage`` call consumes.

    Every stream held here is closed by the stage call, on success or failure.
    """

    app_tar: ByteStream
    app_config: AppConfig
    cache: ByteStream = field(default_factory=ByteStream.empty)
    cache_empty: bool = True
    cache_sink: Sink | None = None  # receives the output build cache on success
    buildpack_zips: dict[str, ByteStream] = field(default_factory=dict)
    app_dir: str | None = None
    force_detect: bool = False
    rsync: bool = False
    color: Callable[[str], str] = _plain_prefix  # applied to the log line prefix

    def streams(self) -> list[ByteStream]:
        return [self.app_tar, self.cache, *self.buildpack_zips.values()]
