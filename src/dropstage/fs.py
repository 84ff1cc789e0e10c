"""Local filesystem helpers that hand back streams.

Blocking file work runs in a thread via ``asyncio.to_thread`` so none of
it stalls the event loop driving the container.
"""

from __future__ import annotations

import asyncio
import fnmatch
import os
import tarfile
import tempfile
from pathlib import Path

from dropstage.engine._archive import VCAP_UID
from dropstage.streams import ByteStream, FileReader, FileSink

# Staging output that shouldn't be re-uploaded with the source
DEFAULT_EXCLUDES = ("*.droplet", "*.droplet.tmp", ".*.cache", ".*.cache.tmp")


def _tar_directory(
    path: Path, excludes: tuple[str, ...]
) -> tuple[tempfile.SpooledTemporaryFile, int]:
    def _owned_by_vcap(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = info.gid = VCAP_UID
        info.uname = info.gname = "vcap"
        return info

    spool = tempfile.SpooledTemporaryFile(max_size=8 * 1024 * 1024)
    with tarfile.open(fileobj=spool, mode="w") as tar:
        for child in sorted(path.iterdir()):
            if any(fnmatch.fnmatch(child.name, pattern) for pattern in excludes):
                continue
            tar.add(child, arcname=child.name, filter=_owned_by_vcap)
    size = spool.tell()
    spool.seek(0)
    return spool, size


class LocalFS:
    async def tar_app(self, path: str, excludes: tuple[str, ...] = DEFAULT_EXCLUDES) -> ByteStream:
        """Archive the contents of directory *path* (not the directory itself)."""
        root = Path(path)
        if not root.is_dir():
            raise NotADirectoryError(f"app path is not a directory: {path}")
        spool, size = await asyncio.to_thread(_tar_directory, root, excludes)
        return ByteStream(FileReader(spool), size)  # type: ignore[arg-type]

    async def read_file(self, path: str) -> ByteStream:
        """Open an existing file for reading."""
        file = await asyncio.to_thread(open, path, "rb")
        size = os.fstat(file.fileno()).st_size
        return ByteStream(FileReader(file), size)

    async def open_file(self, path: str) -> ByteStream:
        """Open *path* for reading, creating it empty if it doesn't exist."""
        file = await asyncio.to_thread(open, path, "a+b")
        file.seek(0)
        size = os.fstat(file.fileno()).st_size
        return ByteStream(FileReader(file), size)  # type: ignore[arg-type]

    async def write_file(self, path: str) -> FileSink:
        """Truncate or create *path* for writing."""
        file = await asyncio.to_thread(open, path, "wb")
        return FileSink(file)

    def abs(self, path: str) -> str:
        return str(Path(path).expanduser().resolve())

    def make_dir_all(self, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)
