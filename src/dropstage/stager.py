"""Stager: turns application source into a droplet inside a throwaway container.

``stage`` walks a fixed sequence: build image, create container, copy inputs
in, start, forward logs, wait, copy the droplet out.  The first failure stops
the sequence; the container is removed on every path, immediately on failure
or once the caller closes the returned droplet on success.

A cancellation event (set by a signal handler) removes the container from a
watcher task.  Whatever engine call is in flight then fails like any other
engine error.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import posixpath
import sys
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TextIO

from dropstage.config import StagerConfig
from dropstage.engine import (
    Container,
    EngineClient,
    ImageBuilder,
    forward_logs,
    open_logs,
    pull_file,
    push_archive,
    push_file,
)
from dropstage.env import build_environment, env_list
from dropstage.errors import ExitStatusError
from dropstage.logger import logger
from dropstage.streams import ByteStream
from dropstage.types import AppConfig, ApplicationDescriptor, StageConfig
from dropstage.utils import create_background_task

# Paths inside the staging image
LIFECYCLE_BUILDER = "/tmp/lifecycle/builder"
APP_DIR = "/tmp/app"
LOCAL_DIR = "/tmp/local"
BUILDPACKS_DIR = "/tmp/buildpacks"
CACHE_DIR = "/tmp/cache"
OUTPUT_CACHE = "/tmp/output-cache"
OUTPUT_DROPLET = "/tmp/droplet"
OUTPUT_METADATA = "/tmp/result.json"
HOME_DIR = "/home/vcap"


def buildpack_checksum(buildpack: str) -> str:
    """Directory key the lifecycle uses to find a buildpack: md5 of its name."""
    return hashlib.md5(buildpack.encode()).hexdigest()  # noqa: S324


def buildpack_order(app_config: AppConfig) -> list[str]:
    if app_config.buildpacks:
        return list(app_config.buildpacks)
    if app_config.buildpack:
        return [app_config.buildpack]
    return []


async def collect_buildpacks(
    buildpacks: Iterable[str],
    read_file: Callable[[str], Awaitable[ByteStream]],
) -> dict[str, ByteStream]:
    """Fetch each distinct buildpack once, keyed by checksum.

    Buildpacks that can't be read (remote names, missing paths) are skipped;
    the lifecycle resolves or rejects them itself.
    """
    zips: dict[str, ByteStream] = {}
    attempted: set[str] = set()
    for buildpack in buildpacks:
        if not buildpack:
            continue
        checksum = buildpack_checksum(buildpack)
        if checksum in attempted:
            continue
        attempted.add(checksum)
        try:
            zips[checksum] = await read_file(buildpack)
        except OSError as exc:
            logger.debug("Skipping unreadable buildpack", buildpack=buildpack, err=str(exc))
    return zips


def _staging_script(rsync: bool) -> str:
    lines = [
        "set -e",
        f"for zip in {BUILDPACKS_DIR}/*.zip; do",
        '  [ -e "$zip" ] || continue',
        '  unzip -qq "$zip" -d "${zip%.zip}"',
        "done",
    ]
    if rsync:
        lines.append(f"rsync -a {LOCAL_DIR}/ {APP_DIR}/")
    lines.append(f'{LIFECYCLE_BUILDER} "$@"')
    if rsync:
        lines.append(f"rsync -a --delete {APP_DIR}/ {LOCAL_DIR}/")
    return "\n".join(lines)


def builder_args(buildpacks: list[str], *, force_detect: bool) -> list[str]:
    skip_detect = len(buildpacks) == 1 and not force_detect
    return [
        f"-buildDir={APP_DIR}",
        f"-buildpacksDir={BUILDPACKS_DIR}",
        f"-buildArtifactsCacheDir={CACHE_DIR}",
        f"-outputBuildArtifactsCache={OUTPUT_CACHE}",
        f"-outputDroplet={OUTPUT_DROPLET}",
        f"-outputMetadata={OUTPUT_METADATA}",
        f"-buildpackOrder={','.join(buildpacks)}",
        f"-skipDetect={'true' if skip_detect else 'false'}",
    ]


class Stager:
    """Stages apps and downloads files using the staging image.

    ``logs`` receives the forwarded container output; ``exit_event`` is the
    cancellation signal.
    """

    def __init__(
        self,
        engine: EngineClient,
        config: StagerConfig,
        *,
        logs: TextIO | None = None,
        exit_event: asyncio.Event | None = None,
        image_builder: ImageBuilder | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.logs = logs if logs is not None else sys.stdout
        self.exit_event = exit_event if exit_event is not None else asyncio.Event()
        self.image_builder = image_builder or ImageBuilder(engine, config)

    # ------------------------------------------------------------------
    # Container configuration
    # ------------------------------------------------------------------

    def staging_container_config(self, config: StageConfig) -> dict[str, Any]:
        app_config = config.app_config
        app = ApplicationDescriptor(name=app_config.name)
        env = build_environment(app, app_config.services, app_config.staging_env, app_config.env)
        buildpacks = buildpack_order(app_config)

        container_config: dict[str, Any] = {
            "Hostname": "cflocal",
            "User": "vcap",
            "Env": env_list(env),
            "Image": self.config.image,
            "WorkingDir": HOME_DIR,
            "Entrypoint": [
                "/bin/bash",
                "-c",
                _staging_script(config.rsync and bool(config.app_dir)),
                "builder",
                *builder_args(buildpacks, force_detect=config.force_detect),
            ],
            "Labels": {"cflocal.cache": "empty" if config.cache_empty else "restored"},
        }
        if config.app_dir:
            target = LOCAL_DIR if config.rsync else APP_DIR
            container_config["HostConfig"] = {"Binds": [f"{config.app_dir}:{target}"]}
        return container_config

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    async def stage(self, config: StageConfig) -> ByteStream:
        """Stage the app; return the droplet. Close it to release the container."""
        name = config.app_config.name
        async with contextlib.AsyncExitStack() as inputs:
            for stream in config.streams():
                inputs.push_async_callback(stream.close)

            await self.image_builder.ensure_image()
            container = await Container.create(
                self.engine, f"{name}-staging", self.staging_container_config(config)
            )
            droplet: ByteStream | None = None
            try:
                container.require_id("container create")
                create_background_task(
                    container.remove_on(self.exit_event), name=f"{name}-cancel-watch"
                )
                await self._copy_inputs(container, config)
                await container.start()

                log_reader = await open_logs(container)
                create_background_task(
                    forward_logs(log_reader, self.logs, config.color(f"[{name}] ")),
                    name=f"{name}-logs",
                )

                status = await container.wait()
                if status != 0:
                    raise ExitStatusError(status)
                logger.info("Staging finished", app=name)

                if config.cache_sink is not None:
                    cache = await pull_file(container, OUTPUT_CACHE)
                    await cache.copy_to(config.cache_sink)
                droplet = await pull_file(container, OUTPUT_DROPLET)
            finally:
                await container.remove_after_close(droplet)
        return droplet

    async def _copy_inputs(self, container: Container, config: StageConfig) -> None:
        # A mounted app dir replaces the uploaded source
        if config.app_dir:
            await config.app_tar.close()
        else:
            await push_archive(container, APP_DIR, config.app_tar)
        for checksum, zip_stream in config.buildpack_zips.items():
            await push_file(container, BUILDPACKS_DIR, f"{checksum}.zip", zip_stream)
        if config.cache_empty:
            await config.cache.close()
        else:
            await push_archive(container, CACHE_DIR, config.cache)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self, path: str) -> ByteStream:
        """Copy *path* out of a fresh, never-started container of the image."""
        await self.image_builder.ensure_image()
        filename = posixpath.basename(path.rstrip("/"))
        container = await Container.create(
            self.engine,
            f"{filename}-download",
            {"Image": self.config.image, "Entrypoint": ["bash"]},
        )
        stream: ByteStream | None = None
        try:
            container.require_id("container create")
            stream = await pull_file(container, path)
        finally:
            await container.remove_after_close(stream)
        return stream
