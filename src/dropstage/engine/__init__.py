"""Container engine layer: everything that talks to the Docker daemon.

This package is split into focused submodules:
  _client    : aiohttp client for the Engine HTTP API
  _image     : Dockerfile rendering and staging image builds
  _container : container handle (create, start, wait, idempotent removal)
  _archive   : tar streams into and out of containers
  _logs      : container log demultiplexing and forwarding
"""

from dropstage.engine._archive import pull_file, push_archive, push_file, tar_file
from dropstage.engine._client import EngineClient, ResponseReader
from dropstage.engine._container import Container
from dropstage.engine._image import ImageBuilder, render_dockerfile
from dropstage.engine._logs import forward_logs, open_logs

__all__ = [
    "Container",
    "EngineClient",
    "ImageBuilder",
    "ResponseReader",
    "forward_logs",
    "open_logs",
    "pull_file",
    "push_archive",
    "push_file",
    "render_dockerfile",
    "tar_file",
]
