"""Directory-backed storage of certificate bundles for one category."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TypeVar

import aiofiles.os

from .config import REQUIRED_FILES
from .errors import InvalidNameError
from .file_io import move_file, read_text, write_file
from .logging_config import LOGGER, cert_context
from .models import (
    ATTRIBUTES_FILE_NAME,
    BundleAttributes,
    Certificate,
    CertType,
    FileRole,
)

T = TypeVar("T")

_ROLE_NAMES = frozenset(role.value for role in FileRole)


def validate_name(name: str) -> str:
    """Return ``name`` if it is usable as a bundle directory name.

    Raises:
        InvalidNameError: If the name is empty, hidden, or contains a path separator
    """
    if not name or name.startswith(".") or "/" in name or "\\" in name or "\0" in name:
        raise InvalidNameError(f"invalid certificate name: {name!r}")
    return name


class CertStorage:
    """Stores each certificate bundle in a directory named after it.

    Layout::

        <storage_dir>/<name>/certificate
        <storage_dir>/<name>/key
        <storage_dir>/<name>/_attributes_
        ...

    A bundle is only listed or returned when it holds every file in
    ``required_files``; incomplete bundles are invisible.
    """

    def __init__(
        self,
        cert_type: CertType,
        storage_dir: Path,
        required_files: Iterable[FileRole | str] | None = None,
    ) -> None:
        """Initialize storage for one category.

        Args:
            cert_type: Category stored here
            storage_dir: Existing directory holding one subdirectory per bundle
            required_files: Roles a bundle needs to be valid; defaults to the
                category's REQUIRED_FILES entry
        """
        self.cert_type = cert_type
        self.storage_dir = storage_dir
        if required_files is None:
            self.required_files = REQUIRED_FILES[cert_type]
        else:
            self.required_files = frozenset(FileRole.coerce(role) for role in required_files)

        self._locks: dict[str, asyncio.Lock] = {}

    def get_file_path(self, name: str, role: FileRole | str) -> Path:
        """Path of a bundle's file; existence is not checked."""
        return self.storage_dir / validate_name(name) / FileRole.coerce(role).value

    async def get_certs(self, max_count: int | None = None) -> dict[str, Certificate]:
        """Load valid bundles, at most ``max_count`` of them.

        Order follows directory enumeration and is not stable. Incomplete
        bundles are skipped.
        """
        certs: dict[str, Certificate] = {}
        for entry in await aiofiles.os.listdir(self.storage_dir):
            if max_count is not None and len(certs) >= max_count:
                break
            if not await aiofiles.os.path.isdir(self.storage_dir / entry):
                continue
            cert = await self._load_cert(entry)
            if cert is not None:
                certs[entry] = cert
        return certs

    async def get_cert(self, name: str) -> Certificate | None:
        """Load one bundle, or None if it is missing, incomplete or badly named."""
        try:
            validate_name(name)
        except InvalidNameError:
            return None
        return await self._load_cert(name)

    def _lock_for(self, name: str) -> asyncio.Lock:
        # No await between lookup and insert, so one lock per name.
        return self._locks.setdefault(name, asyncio.Lock())

    @asynccontextmanager
    async def exclusive(self, name: str) -> AsyncIterator[Certificate]:
        """Hold the per-name lock and yield the bundle.

        A missing or incomplete bundle is yielded with no files, so it fails
        every signing precondition. Locks are per process only.
        """
        async with self._lock_for(name):
            cert = await self.get_cert(name)
            if cert is None:
                cert = Certificate(
                    name=name,
                    cert_type=self.cert_type,
                    directory=self.storage_dir / name,
                )
            yield cert

    async def with_cert(self, name: str, action: Callable[[Certificate], Awaitable[T]]) -> T:
        """Run ``action`` with exclusive access to a bundle.

        Use this whenever a bundle's files may change, e.g. signing with it
        updates its index and serial files. At most one action per name runs
        at a time; different names run concurrently.
        """
        async with self.exclusive(name) as cert:
            return await action(cert)

    async def store_cert(
        self,
        name: str,
        paths: Mapping[FileRole | str, Path],
        attributes: BundleAttributes | None = None,
    ) -> str | None:
        """Move files into a new bundle directory.

        Args:
            name: Bundle name, used as the directory name
            paths: Current location of each file, keyed by role; the files are moved
            attributes: Written to the attributes sidecar file when given

        Returns:
            The bundle name, or None if ``paths`` lacks a required role (nothing
            is touched in that case)

        Raises:
            InvalidNameError: If the name is unusable
            FileExistsError: If a bundle with this name already exists
        """
        files = {FileRole.coerce(role): Path(path) for role, path in paths.items()}
        missing = self.required_files - files.keys()
        if missing:
            LOGGER.warning(
                "Not storing %s certificate %s: missing %s",
                self.cert_type,
                name,
                ", ".join(sorted(missing)),
                extra=cert_context(name, self.cert_type),
            )
            return None

        cert_dir = self.storage_dir / validate_name(name)
        await aiofiles.os.mkdir(cert_dir)

        async with asyncio.TaskGroup() as tg:
            for role, source in files.items():
                tg.create_task(move_file(source, cert_dir / role.value))
            if attributes is not None:
                tg.create_task(write_file(cert_dir / ATTRIBUTES_FILE_NAME, attributes.to_json()))

        LOGGER.info(
            "Stored %s certificate %s", self.cert_type, name,
            extra=cert_context(name, self.cert_type),
        )
        return name

    async def _load_cert(self, name: str) -> Certificate | None:
        cert_dir = self.storage_dir / name
        try:
            entries = await aiofiles.os.listdir(cert_dir)
        except (FileNotFoundError, NotADirectoryError):
            return None

        attributes = BundleAttributes()
        files: set[FileRole] = set()
        extra_files: set[str] = set()
        for entry in entries:
            entry_path = cert_dir / entry
            if not await aiofiles.os.path.isfile(entry_path):
                continue
            if entry == ATTRIBUTES_FILE_NAME:
                try:
                    attributes = BundleAttributes.from_json(await read_text(entry_path))
                except (OSError, ValueError) as e:
                    LOGGER.warning("Unreadable attributes for %s: %s", entry_path, e)
            elif entry in _ROLE_NAMES:
                files.add(FileRole(entry))
            else:
                extra_files.add(entry)

        if not self.required_files <= files:
            return None

        return Certificate(
            name=name,
            cert_type=self.cert_type,
            directory=cert_dir,
            files=frozenset(files),
            extra_files=frozenset(extra_files),
            attributes=attributes,
        )
