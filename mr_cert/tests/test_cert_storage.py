"""Tests for CertStorage."""

import asyncio
import json
from pathlib import Path

import pytest

from conftest import SIGNER_ROLES, write_bundle
from mr_cert.lib.cert_storage import CertStorage, validate_name
from mr_cert.lib.errors import InvalidNameError, InvariantViolation
from mr_cert.lib.models import BundleAttributes, Certificate, CertType, FileRole


@pytest.fixture
def root_storage(storage_dir: Path) -> CertStorage:
    """Return root storage requiring the signing files."""
    return CertStorage(CertType.ROOT, storage_dir)


@pytest.fixture
def server_storage(storage_dir: Path) -> CertStorage:
    """Return server storage requiring only a certificate."""
    return CertStorage(CertType.SERVER, storage_dir)


def _scratch_files(directory: Path, *roles: FileRole) -> dict[FileRole, Path]:
    directory.mkdir(exist_ok=True)
    paths = {}
    for role in roles:
        path = directory / f"tmp-{role.value}"
        path.write_text(f"{role.value} contents")
        paths[role] = path
    return paths


class TestValidateName:
    """Tests for validate_name()."""

    @pytest.mark.parametrize("name", ["", ".", "..", "../x", "a/b", "a\\b", ".hidden", "a\0b"])
    def test_rejects_unsafe_names(self, name: str) -> None:
        """Names that are not a single safe path component are rejected."""
        with pytest.raises(InvalidNameError):
            validate_name(name)

    @pytest.mark.parametrize("name", ["root", "my-server.example.com", "client_01"])
    def test_accepts_plain_names(self, name: str) -> None:
        """Ordinary names are returned unchanged."""
        assert validate_name(name) == name


class TestGetFilePath:
    """Tests for CertStorage.get_file_path()."""

    def test_path_layout(self, root_storage: CertStorage, storage_dir: Path) -> None:
        """Files live at <storage_dir>/<name>/<role>."""
        assert root_storage.get_file_path("ca", FileRole.KEY) == storage_dir / "ca" / "key"
        assert root_storage.get_file_path("ca", "chain") == storage_dir / "ca" / "chain"

    def test_unknown_role_is_invariant_violation(self, root_storage: CertStorage) -> None:
        """Unknown roles are never silently accepted."""
        with pytest.raises(InvariantViolation):
            root_storage.get_file_path("ca", "passphrase")

    def test_invalid_name_raises(self, root_storage: CertStorage) -> None:
        """Traversal through the name is rejected."""
        with pytest.raises(InvalidNameError):
            root_storage.get_file_path("../other", FileRole.CERTIFICATE)


class TestGetCerts:
    """Tests for get_cert() and get_certs()."""

    async def test_complete_bundle_is_returned(self, root_storage: CertStorage) -> None:
        """A bundle with every required file loads with its attributes."""
        write_bundle(root_storage, "ca", SIGNER_ROLES, BundleAttributes(intermediate_only=True))

        cert = await root_storage.get_cert("ca")

        assert cert is not None
        assert cert.name == "ca"
        assert cert.cert_type is CertType.ROOT
        assert cert.files == SIGNER_ROLES
        assert cert.intermediate_only is True

    async def test_incomplete_bundle_is_invisible(self, root_storage: CertStorage) -> None:
        """A bundle missing a required file is not found or listed."""
        write_bundle(root_storage, "partial", {FileRole.CERTIFICATE, FileRole.KEY})

        assert await root_storage.get_cert("partial") is None
        assert await root_storage.get_certs() == {}

    async def test_missing_bundle_is_none(self, root_storage: CertStorage) -> None:
        """A missing bundle returns None."""
        assert await root_storage.get_cert("nothing") is None

    async def test_invalid_name_is_none(self, root_storage: CertStorage) -> None:
        """An unsafe name reads as not found."""
        assert await root_storage.get_cert("../ca") is None

    async def test_required_files_per_category(self, server_storage: CertStorage) -> None:
        """Server bundles only need a certificate."""
        write_bundle(server_storage, "web", {FileRole.CERTIFICATE})

        cert = await server_storage.get_cert("web")

        assert cert is not None
        assert cert.files == {FileRole.CERTIFICATE}

    async def test_other_files_are_extra(self, root_storage: CertStorage) -> None:
        """Files openssl leaves next to the signing files are tracked as extras."""
        cert_dir = write_bundle(root_storage, "ca", SIGNER_ROLES)
        (cert_dir / "index.attr").write_text("unique_subject = no\n")
        (cert_dir / "random").write_bytes(b"\x00" * 16)

        cert = await root_storage.get_cert("ca")

        assert cert is not None
        assert cert.extra_files == {"index.attr", "random"}
        assert cert.files == SIGNER_ROLES

    async def test_unreadable_attributes_are_ignored(self, root_storage: CertStorage) -> None:
        """A corrupt sidecar leaves the bundle usable with default attributes."""
        cert_dir = write_bundle(root_storage, "ca", SIGNER_ROLES)
        (cert_dir / "_attributes_").write_text("{not json")

        cert = await root_storage.get_cert("ca")

        assert cert is not None
        assert cert.attributes == BundleAttributes()

    async def test_listing_skips_stray_files(
        self, server_storage: CertStorage, storage_dir: Path
    ) -> None:
        """Plain files in the storage directory are not bundles."""
        write_bundle(server_storage, "web", {FileRole.CERTIFICATE})
        (storage_dir / "README").write_text("not a bundle")

        assert set(await server_storage.get_certs()) == {"web"}

    async def test_max_count_limits_listing(self, server_storage: CertStorage) -> None:
        """At most max_count bundles are returned."""
        for index in range(5):
            write_bundle(server_storage, f"web{index}", {FileRole.CERTIFICATE})

        assert len(await server_storage.get_certs(max_count=2)) == 2
        assert len(await server_storage.get_certs()) == 5
        assert await server_storage.get_certs(max_count=0) == {}


class TestStoreCert:
    """Tests for store_cert()."""

    async def test_moves_files_and_writes_attributes(
        self, root_storage: CertStorage, tmp_path: Path
    ) -> None:
        """Files are moved into the new bundle and attributes written as JSON."""
        paths = _scratch_files(tmp_path / "scratch", *SIGNER_ROLES)
        attributes = BundleAttributes(intermediate_only=False, extra={"origin": "test"})

        name = await root_storage.store_cert("ca", paths, attributes)

        assert name == "ca"
        assert all(not path.exists() for path in paths.values())
        cert_dir = root_storage.storage_dir / "ca"
        assert (cert_dir / "serial").read_text() == "serial contents"
        assert json.loads((cert_dir / "_attributes_").read_text()) == {
            "origin": "test",
            "intermediate_only": False,
        }
        cert = await root_storage.get_cert("ca")
        assert cert is not None
        assert cert.attributes == attributes

    async def test_missing_required_role_touches_nothing(
        self, root_storage: CertStorage, tmp_path: Path
    ) -> None:
        """Without every required role nothing is created or moved."""
        paths = _scratch_files(tmp_path / "scratch", FileRole.CERTIFICATE, FileRole.KEY)

        assert await root_storage.store_cert("ca", paths) is None

        assert not (root_storage.storage_dir / "ca").exists()
        assert all(path.exists() for path in paths.values())

    async def test_existing_bundle_is_not_overwritten(
        self, server_storage: CertStorage, tmp_path: Path
    ) -> None:
        """Storing under an existing name fails and leaves the old bundle alone."""
        write_bundle(server_storage, "web", {FileRole.CERTIFICATE})
        paths = _scratch_files(tmp_path / "scratch", FileRole.CERTIFICATE)

        with pytest.raises(FileExistsError):
            await server_storage.store_cert("web", paths)

        assert paths[FileRole.CERTIFICATE].exists()

    async def test_invalid_name_raises(self, server_storage: CertStorage, tmp_path: Path) -> None:
        """Names that would escape the storage directory are rejected."""
        paths = _scratch_files(tmp_path / "scratch", FileRole.CERTIFICATE)

        with pytest.raises(InvalidNameError):
            await server_storage.store_cert("../escape", paths)

    async def test_unknown_role_is_invariant_violation(
        self, server_storage: CertStorage, tmp_path: Path
    ) -> None:
        """An unknown role key is a programming error."""
        paths = {"certificate": tmp_path / "a", "passphrase": tmp_path / "b"}

        with pytest.raises(InvariantViolation):
            await server_storage.store_cert("web", paths)

    async def test_optional_roles_are_stored(
        self, server_storage: CertStorage, tmp_path: Path
    ) -> None:
        """Roles beyond the required ones are stored too."""
        paths = _scratch_files(
            tmp_path / "scratch", FileRole.CERTIFICATE, FileRole.KEY, FileRole.CHAIN
        )

        await server_storage.store_cert("web", paths)

        cert = await server_storage.get_cert("web")
        assert cert is not None
        assert cert.files == {FileRole.CERTIFICATE, FileRole.KEY, FileRole.CHAIN}


class TestWithCert:
    """Tests for with_cert() mutual exclusion."""

    async def test_passes_loaded_bundle(self, server_storage: CertStorage) -> None:
        """The action receives the loaded bundle."""
        write_bundle(server_storage, "web", {FileRole.CERTIFICATE})

        async def action(cert: Certificate) -> set[FileRole]:
            return set(cert.files)

        assert await server_storage.with_cert("web", action) == {FileRole.CERTIFICATE}

    async def test_missing_bundle_has_no_files(self, root_storage: CertStorage) -> None:
        """A missing bundle is passed with no files, so it cannot sign."""

        async def action(cert: Certificate) -> bool:
            return cert.is_signing_capable or bool(cert.files)

        assert await root_storage.with_cert("missing", action) is False

    async def test_same_name_runs_one_at_a_time(self, server_storage: CertStorage) -> None:
        """Actions on the same bundle never overlap."""
        events: list[str] = []

        async def action(label: str) -> None:
            async def run(cert: Certificate) -> None:
                events.append(f"start {label}")
                await asyncio.sleep(0.05)
                events.append(f"end {label}")

            await server_storage.with_cert("web", run)

        await asyncio.gather(action("a"), action("b"))

        assert events in (
            ["start a", "end a", "start b", "end b"],
            ["start b", "end b", "start a", "end a"],
        )

    async def test_different_names_overlap(self, server_storage: CertStorage) -> None:
        """Actions on different bundles run concurrently."""
        both_started = asyncio.Event()
        started: set[str] = set()

        async def run(cert: Certificate) -> None:
            started.add(cert.name)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)

        await asyncio.gather(
            server_storage.with_cert("one", run),
            server_storage.with_cert("two", run),
        )

        assert started == {"one", "two"}

    async def test_lock_released_after_error(self, server_storage: CertStorage) -> None:
        """A failing action does not leave the bundle locked."""

        async def fail(cert: Certificate) -> None:
            raise RuntimeError("boom")

        async def succeed(cert: Certificate) -> str:
            return "ok"

        with pytest.raises(RuntimeError):
            await server_storage.with_cert("web", fail)

        assert await asyncio.wait_for(server_storage.with_cert("web", succeed), timeout=1) == "ok"
