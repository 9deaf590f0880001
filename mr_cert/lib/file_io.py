"""Async whole-file helpers; every handle is closed before the call returns."""

import shutil
import tempfile
from pathlib import Path

import aiofiles
import aiofiles.os

move_file = aiofiles.os.wrap(shutil.move)
remove_tree = aiofiles.os.wrap(shutil.rmtree)
make_temp_dir = aiofiles.os.wrap(tempfile.mkdtemp)


async def read_text(path: Path, encoding: str = "utf-8") -> str:
    """Read a whole file as text."""
    async with aiofiles.open(path, "r", encoding=encoding) as f:
        return await f.read()


async def read_bytes(path: Path) -> bytes:
    """Read a whole file as bytes."""
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


async def write_file(path: Path, contents: str | bytes) -> None:
    """Create or truncate ``path`` and write ``contents`` to it."""
    if isinstance(contents, bytes):
        async with aiofiles.open(path, "wb") as f:
            await f.write(contents)
    else:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(contents)
