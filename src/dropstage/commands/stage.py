"""``stage`` command: gathers local inputs and persists the droplet.

Outputs land in the working directory: ``<name>.droplet`` and the reusable
build cache ``.<name>.cache``.  The cache is rewritten through a temporary
file so a failed run never truncates the previous one.
"""

from __future__ import annotations

import contextlib
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from dropstage.fs import LocalFS
from dropstage.local_config import LocalConfigLoader, get_app_config
from dropstage.logger import logger
from dropstage.stager import Stager, collect_buildpacks
from dropstage.streams import ByteStream
from dropstage.types import Services, StageConfig


@dataclass
class StageOptions:
    name: str
    buildpacks: list[str] = field(default_factory=list)
    app: str = "."
    app_dir: str = ""
    service_app: str = ""
    forward_app: str = ""
    force_detect: bool = False
    rsync: bool = False


class ServiceResolver(Protocol):
    """Looks up the service bindings of a deployed app."""

    async def services(self, app_name: str) -> Services: ...


def droplet_path(name: str) -> str:
    return f"./{name}.droplet"


def cache_path(name: str) -> str:
    return f"./.{name}.cache"


def _discard(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.remove(path)


async def stream_out(stream: ByteStream, fs: LocalFS, path: str) -> int:
    """Persist *stream* to *path* atomically; the stream is closed either way.

    Nothing appears at *path* unless the whole stream was copied.
    """
    tmp = path + ".tmp"
    try:
        sink = await fs.write_file(tmp)
    except BaseException:
        await stream.close()
        raise
    try:
        copied = await stream.copy_to(sink)
    except BaseException:
        await sink.close()
        _discard(tmp)
        raise
    await sink.close()
    os.replace(tmp, path)
    return copied


class StageCommand:
    def __init__(
        self,
        stager: Stager,
        fs: LocalFS,
        config_loader: LocalConfigLoader,
        *,
        service_resolver: ServiceResolver | None = None,
        color: Callable[[str], str] | None = None,
    ) -> None:
        self.stager = stager
        self.fs = fs
        self.config_loader = config_loader
        self.service_resolver = service_resolver
        self.color = color

    async def _remote_services(self, options: StageOptions) -> Services | None:
        source = options.service_app or options.forward_app
        if not source:
            return None
        if self.service_resolver is None:
            raise ValueError(f"cannot fetch services of '{source}': no remote platform configured")
        return await self.service_resolver.services(source)

    async def run(self, options: StageOptions) -> str:
        """Stage *options.name*; return the droplet's path."""
        local_yml = self.config_loader.load()
        app_config = get_app_config(options.name, local_yml)
        if options.buildpacks:
            app_config.buildpacks = list(options.buildpacks)
            app_config.buildpack = options.buildpacks[-1]

        app_dir = None
        if options.app_dir:
            app_dir = self.fs.abs(options.app_dir)
            self.fs.make_dir_all(app_dir)

        remote_services = await self._remote_services(options)
        if remote_services is not None:
            app_config.services = remote_services
        service_app, forward_app = options.service_app, options.forward_app
        if service_app and forward_app and service_app != forward_app:
            logger.warning(
                f"'{forward_app}' app selected for service forwarding will not be used",
                service_app=service_app,
                forward_app=forward_app,
            )

        path = droplet_path(options.name)
        cache_file = cache_path(options.name)
        cache_tmp = cache_file + ".tmp"
        async with contextlib.AsyncExitStack() as stack:
            app_tar = await self.fs.tar_app(options.app)
            stack.push_async_callback(app_tar.close)
            buildpack_zips = await collect_buildpacks(
                [app_config.buildpack or "", *app_config.buildpacks], self.fs.read_file
            )
            for zip_stream in buildpack_zips.values():
                stack.push_async_callback(zip_stream.close)
            cache = await self.fs.open_file(cache_file)
            stack.push_async_callback(cache.close)
            cache_sink = await self.fs.write_file(cache_tmp)
            stack.push_async_callback(cache_sink.close)

            config = StageConfig(
                app_tar=app_tar,
                app_config=app_config,
                cache=cache,
                cache_empty=cache.length == 0,
                cache_sink=cache_sink,
                buildpack_zips=buildpack_zips,
                app_dir=app_dir,
                force_detect=options.force_detect,
                rsync=options.rsync,
            )
            if self.color is not None:
                config.color = self.color
            try:
                droplet = await self.stager.stage(config)
                await stream_out(droplet, self.fs, path)
            except BaseException:
                _discard(cache_tmp)
                raise

        os.replace(cache_tmp, cache_file)
        logger.info("Droplet written", app=options.name, path=path)
        return path


class DownloadCommand:
    def __init__(self, stager: Stager, fs: LocalFS) -> None:
        self.stager = stager
        self.fs = fs

    async def run(self, path: str, output: str) -> int:
        """Copy *path* from the staging image to the local file *output*."""
        stream = await self.stager.download(path)
        copied = await stream_out(stream, self.fs, output)
        logger.info("File downloaded", path=path, output=output, size=copied)
        return copied
