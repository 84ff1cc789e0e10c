"""User-facing commands built on :class:`~dropstage.stager.Stager`."""

from dropstage.commands.stage import (
    DownloadCommand,
    ServiceResolver,
    StageCommand,
    StageOptions,
    cache_path,
    droplet_path,
)

__all__ = [
    "DownloadCommand",
    "ServiceResolver",
    "StageCommand",
    "StageOptions",
    "cache_path",
    "droplet_path",
]
