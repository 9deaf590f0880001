"""Certificate authority workflows for creating, signing and importing certificates."""

import asyncio
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

import aiofiles.os

from . import openssl_config
from .cert_storage import CertStorage
from .cert_utils import deserialize_certificate, deserialize_private_key, key_matches_certificate
from .config import DistinguishedName, KeyParameters
from .errors import (
    CertAuthorityError,
    CertificateVerificationError,
    InvariantViolation,
    KeyMismatchError,
    SignerNotEligibleError,
)
from .file_io import make_temp_dir, read_bytes, remove_tree, write_file
from .logging_config import LOGGER, cert_context
from .models import BundleAttributes, Certificate, FileRole
from .openssl import OpenSsl
from .openssl_config import SignedType

T = TypeVar("T")


def _unwrap(error: BaseException) -> BaseException:
    """Return the single error inside (possibly nested) exception groups."""
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    return error


def _to_bytes(contents: str | bytes) -> bytes:
    return contents.encode("utf-8") if isinstance(contents, str) else contents


def _same_certificate(first: str | bytes, second: str | bytes) -> bool:
    """Whether two PEM texts hold the same certificate."""
    first, second = _to_bytes(first), _to_bytes(second)
    try:
        return deserialize_certificate(first) == deserialize_certificate(second)
    except ValueError:
        return first.strip() == second.strip()


class CertificateAuthority:
    """Creates, signs and imports certificates with openssl.

    Every workflow runs in its own scratch directory and hands its files to a
    CertStorage only after all steps succeed, so a failed workflow never
    leaves a visible bundle. Workflows return the stored name, or None on any
    failure (the cause is logged).

    Signer bundles should be obtained through CertStorage.with_cert, since
    signing updates the signer's index and serial files.
    """

    def __init__(
        self,
        scratch_dir: Path,
        openssl: OpenSsl | None = None,
        keep_scratch: bool = False,
    ) -> None:
        """Initialize the certificate authority.

        Args:
            scratch_dir: Existing directory under which scratch directories are made
            openssl: Tool wrapper; a default OpenSsl() when omitted
            keep_scratch: Default for keeping scratch directories, for debugging
        """
        self.scratch_root = scratch_dir
        self.openssl = openssl if openssl is not None else OpenSsl()
        self.keep_scratch = keep_scratch

    @asynccontextmanager
    async def scratch_dir(self, keep: bool | None = None) -> AsyncIterator[Path]:
        """Yield a new, uniquely named directory.

        The directory is removed afterwards, also when the body raises, unless
        ``keep`` (or the instance's ``keep_scratch`` when ``keep`` is None).
        """
        if keep is None:
            keep = self.keep_scratch

        path = Path(await make_temp_dir(dir=self.scratch_root))
        LOGGER.debug("Created scratch dir %s", path)
        try:
            yield path
        finally:
            if keep:
                LOGGER.info("Keeping scratch dir %s", path)
            else:
                await remove_tree(path)
                LOGGER.debug("Removed scratch dir %s", path)

    async def with_scratch_dir(
        self, action: Callable[[Path], Awaitable[T]], keep: bool | None = None
    ) -> T:
        """Run ``action`` with a scratch directory; see scratch_dir()."""
        async with self.scratch_dir(keep) as path:
            return await action(path)

    async def get_text(self, certificate_path: Path) -> str | None:
        """Human readable dump of a certificate, or None if openssl fails."""
        try:
            return await self.openssl.render_text(certificate_path)
        except CertAuthorityError as e:
            LOGGER.warning("Could not render %s: %s", certificate_path, e)
            return None

    async def create_ca_files(self, index_path: Path, serial_path: Path) -> None:
        """Create the empty index and random serial files openssl needs to sign.

        The serial starts at a random 16-bit value; openssl increments it.
        """
        async with asyncio.TaskGroup() as tg:
            tg.create_task(write_file(index_path, ""))
            tg.create_task(write_file(serial_path, secrets.token_bytes(2).hex() + "\n"))

    async def create_chain_file(self, chain_path: Path, *source_paths: Path) -> None:
        """Concatenate certificates into a chain file.

        Give the sources in order from leaf towards root.
        """
        certs = await asyncio.gather(*(read_bytes(path) for path in source_paths))
        await write_file(chain_path, b"".join(certs))

    async def make_root_cert(
        self,
        name: str,
        key: KeyParameters,
        subject: DistinguishedName,
        intermediate_only: bool,
        storage: CertStorage,
    ) -> str | None:
        """Create a self-signed root certificate with its key, index and serial.

        Args:
            name: Name to store the bundle under
            key: Key length, digest and lifetime
            subject: Subject distinguished name
            intermediate_only: Restrict the root to signing intermediates
            storage: Root storage

        Returns:
            The stored name, or None on failure
        """
        return await self._run_workflow(
            "root certificate",
            name,
            self._make_root_cert(name, key, subject, intermediate_only, storage),
            storage,
        )

    async def make_intermediate_cert(
        self,
        name: str,
        signer: Certificate,
        key: KeyParameters,
        subject: DistinguishedName,
        storage: CertStorage,
    ) -> str | None:
        """Create an intermediate CA signed by ``signer`` under the strict policy.

        The new intermediate gets its own index and serial so it can sign.
        """
        return await self._run_workflow(
            "intermediate certificate",
            name,
            self._make_intermediate_cert(name, signer, key, subject, storage),
            storage,
            signer,
        )

    async def make_server_cert(
        self,
        name: str,
        signer: Certificate,
        key: KeyParameters,
        subject: DistinguishedName,
        alternate_domain_names: Sequence[str],
        storage: CertStorage,
    ) -> str | None:
        """Create a server certificate and key signed by ``signer``."""
        return await self._run_workflow(
            "server certificate",
            name,
            self._make_leaf_cert(
                name, signer, key, subject, alternate_domain_names, SignedType.SERVER, storage
            ),
            storage,
            signer,
        )

    async def make_client_cert(
        self,
        name: str,
        signer: Certificate,
        key: KeyParameters,
        subject: DistinguishedName,
        alternate_domain_names: Sequence[str],
        storage: CertStorage,
    ) -> str | None:
        """Create a client certificate and key signed by ``signer``."""
        return await self._run_workflow(
            "client certificate",
            name,
            self._make_leaf_cert(
                name, signer, key, subject, alternate_domain_names, SignedType.CLIENT, storage
            ),
            storage,
            signer,
        )

    async def sign_server_csr(
        self,
        name: str,
        signer: Certificate,
        digest: str,
        lifetime_days: int,
        csr_contents: str | bytes,
        storage: CertStorage,
    ) -> str | None:
        """Sign a supplied server CSR; no key is stored."""
        return await self._run_workflow(
            "server certificate",
            name,
            self._sign_supplied_csr(
                name, signer, digest, lifetime_days, csr_contents, SignedType.SERVER, storage
            ),
            storage,
            signer,
        )

    async def sign_client_csr(
        self,
        name: str,
        signer: Certificate,
        digest: str,
        lifetime_days: int,
        csr_contents: str | bytes,
        storage: CertStorage,
    ) -> str | None:
        """Sign a supplied client CSR; no key is stored."""
        return await self._run_workflow(
            "client certificate",
            name,
            self._sign_supplied_csr(
                name, signer, digest, lifetime_days, csr_contents, SignedType.CLIENT, storage
            ),
            storage,
            signer,
        )

    async def verify_and_store_cert(
        self,
        name: str,
        certificate_text: str | bytes,
        storage: CertStorage,
        private_key_text: str | bytes | None = None,
        signer: Certificate | None = None,
        create_ca_files: bool = False,
        intermediate_only: bool = False,
    ) -> str | None:
        """Verify an uploaded certificate and store it if valid.

        Args:
            name: Name to store the bundle under
            certificate_text: PEM certificate
            storage: Storage for the new bundle
            private_key_text: PEM private key; only needed to sign with the certificate
            signer: Issuer bundle, also the verification anchor; None for a
                self-signed certificate, which is verified against itself
            create_ca_files: Create index and serial files so the certificate can sign
            intermediate_only: Restrict the certificate to signing intermediates

        Returns:
            The stored name, or None if the certificate does not verify or
            could not be stored
        """
        return await self._run_workflow(
            "uploaded certificate",
            name,
            self._verify_and_store_cert(
                name,
                certificate_text,
                storage,
                private_key_text,
                signer,
                create_ca_files,
                intermediate_only,
            ),
            storage,
            signer,
        )

    async def _run_workflow(
        self,
        description: str,
        name: str,
        workflow: Coroutine[Any, Any, str | None],
        storage: CertStorage,
        signer: Certificate | None = None,
    ) -> str | None:
        context = cert_context(
            name,
            storage.cert_type,
            None if signer is None else f"{signer.cert_type}/{signer.name}",
        )
        LOGGER.info("Creating %s %s", description, name, extra=context)
        try:
            result = await workflow
        except InvariantViolation:
            raise
        except Exception as e:
            if isinstance(e, ExceptionGroup) and e.subgroup(InvariantViolation) is not None:
                raise
            error = _unwrap(e)
            if isinstance(error, SignerNotEligibleError):
                LOGGER.warning("Refusing %s %s: %s", description, name, error, extra=context)
            elif isinstance(error, CertAuthorityError):
                LOGGER.error(
                    "Failed to create %s %s: %s", description, name, error, extra=context
                )
            else:
                LOGGER.error(
                    "Failed to create %s %s", description, name, exc_info=e, extra=context
                )
            return None

        if result:
            LOGGER.info("Created %s %s", description, result, extra=context)
        return result

    @staticmethod
    def _check_signer(signer: Certificate, signs_leaf: bool) -> None:
        """Raise SignerNotEligibleError unless ``signer`` may sign.

        Leaf certificates may not be signed by ``intermediate_only`` signers.
        """
        if not signer.is_signing_capable:
            raise SignerNotEligibleError(
                f"{signer.cert_type} certificate {signer.name!r} cannot sign certificates"
            )
        if signs_leaf and signer.intermediate_only:
            raise SignerNotEligibleError(
                f"{signer.cert_type} certificate {signer.name!r} may only sign intermediates"
            )

    @staticmethod
    async def _check_name_free(name: str, storage: CertStorage) -> None:
        """Fail before signing anything if the bundle name is taken.

        Raises:
            InvalidNameError: If the name is unusable
            FileExistsError: If the bundle directory exists
        """
        path = storage.get_file_path(name, FileRole.CERTIFICATE).parent
        if await aiofiles.os.path.exists(path):
            raise FileExistsError(f"{storage.cert_type} certificate {name!r} already exists")

    @staticmethod
    def _csr_config(
        key: KeyParameters,
        subject: DistinguishedName,
        is_root_ca: bool,
        alternate_domain_names: Sequence[str] = (),
    ) -> str:
        return openssl_config.certificate_signing_request_config(
            digest=key.digest,
            common_name=subject.common_name,
            country=subject.country,
            state=subject.state,
            locality=subject.locality,
            organization=subject.organization,
            organizational_unit=subject.organizational_unit,
            email_address=subject.email_address,
            is_root_ca=is_root_ca,
            alternate_domain_names=alternate_domain_names,
        )

    @staticmethod
    def _signer_files(signer: Certificate) -> tuple[Path, Path, Path, Path, Path]:
        """Index, serial, random, key and certificate paths, in CA config order."""
        return (
            signer.file_path(FileRole.INDEX),
            signer.file_path(FileRole.SERIAL),
            signer.random_path,
            signer.file_path(FileRole.KEY),
            signer.file_path(FileRole.CERTIFICATE),
        )

    @staticmethod
    def _signer_attributes(signer: Certificate) -> BundleAttributes:
        return BundleAttributes(signer_type=signer.cert_type, signer_name=signer.name)

    def _loose_ca_config(
        self,
        signer: Certificate,
        output_dir: Path,
        digest: str,
        lifetime_days: int,
        signed_type: SignedType,
    ) -> str:
        return openssl_config.loose_ca_config(
            *self._signer_files(signer),
            output_dir,
            digest=digest,
            lifetime_days=lifetime_days,
            signed_type=signed_type,
        )

    async def _make_root_cert(
        self,
        name: str,
        key: KeyParameters,
        subject: DistinguishedName,
        intermediate_only: bool,
        storage: CertStorage,
    ) -> str | None:
        await self._check_name_free(name, storage)

        async with self.scratch_dir() as scratch_dir:
            csr_config_path = scratch_dir / "csr.conf"
            key_path = scratch_dir / "key"
            certificate_path = scratch_dir / "certificate"
            index_path = scratch_dir / "index"
            serial_path = scratch_dir / "serial"

            async with asyncio.TaskGroup() as tg:
                tg.create_task(
                    write_file(csr_config_path, self._csr_config(key, subject, is_root_ca=True))
                )
                tg.create_task(self.openssl.generate_key(key_path, key.key_length))

            await self.openssl.self_sign(
                csr_config_path, key.lifetime_days, key_path, certificate_path
            )
            await self.create_ca_files(index_path, serial_path)

            return await storage.store_cert(
                name,
                {
                    FileRole.CERTIFICATE: certificate_path,
                    FileRole.KEY: key_path,
                    FileRole.INDEX: index_path,
                    FileRole.SERIAL: serial_path,
                },
                BundleAttributes(intermediate_only=intermediate_only),
            )

    async def _make_intermediate_cert(
        self,
        name: str,
        signer: Certificate,
        key: KeyParameters,
        subject: DistinguishedName,
        storage: CertStorage,
    ) -> str | None:
        self._check_signer(signer, signs_leaf=False)
        await self._check_name_free(name, storage)

        async with self.scratch_dir() as scratch_dir:
            csr_config_path = scratch_dir / "csr.conf"
            csr_path = scratch_dir / "csr"
            key_path = scratch_dir / "key"
            ca_config_path = scratch_dir / "ca.conf"
            certificate_path = scratch_dir / "certificate"
            chain_path = scratch_dir / "chain"
            index_path = scratch_dir / "index"
            serial_path = scratch_dir / "serial"

            await write_file(csr_config_path, self._csr_config(key, subject, is_root_ca=False))

            async with asyncio.TaskGroup() as tg:
                tg.create_task(
                    self.openssl.create_csr(csr_config_path, key.key_length, key_path, csr_path)
                )
                tg.create_task(
                    write_file(
                        ca_config_path,
                        openssl_config.strict_ca_config(*self._signer_files(signer), scratch_dir),
                    )
                )

            async with asyncio.TaskGroup() as tg:
                tg.create_task(
                    self.openssl.ca_sign(
                        ca_config_path,
                        csr_path,
                        certificate_path,
                        extensions=openssl_config.INTERMEDIATE_EXTENSIONS_SECTION,
                        days=key.lifetime_days,
                        digest=key.digest,
                    )
                )
                tg.create_task(self.create_ca_files(index_path, serial_path))

            await self.create_chain_file(
                chain_path, certificate_path, signer.file_path(FileRole.CERTIFICATE)
            )

            return await storage.store_cert(
                name,
                {
                    FileRole.CERTIFICATE: certificate_path,
                    FileRole.KEY: key_path,
                    FileRole.INDEX: index_path,
                    FileRole.SERIAL: serial_path,
                    FileRole.CHAIN: chain_path,
                },
                self._signer_attributes(signer),
            )

    async def _make_leaf_cert(
        self,
        name: str,
        signer: Certificate,
        key: KeyParameters,
        subject: DistinguishedName,
        alternate_domain_names: Sequence[str],
        signed_type: SignedType,
        storage: CertStorage,
    ) -> str | None:
        self._check_signer(signer, signs_leaf=True)
        await self._check_name_free(name, storage)

        async with self.scratch_dir() as scratch_dir:
            csr_config_path = scratch_dir / "csr.conf"
            csr_path = scratch_dir / "csr"
            key_path = scratch_dir / "key"
            ca_config_path = scratch_dir / "ca.conf"
            certificate_path = scratch_dir / "certificate"
            chain_path = scratch_dir / "chain"

            await write_file(
                csr_config_path,
                self._csr_config(
                    key, subject, is_root_ca=False, alternate_domain_names=alternate_domain_names
                ),
            )

            async with asyncio.TaskGroup() as tg:
                tg.create_task(
                    self.openssl.create_csr(csr_config_path, key.key_length, key_path, csr_path)
                )
                tg.create_task(
                    write_file(
                        ca_config_path,
                        self._loose_ca_config(
                            signer, scratch_dir, key.digest, key.lifetime_days, signed_type
                        ),
                    )
                )

            await self.openssl.ca_sign(ca_config_path, csr_path, certificate_path)
            await self.create_chain_file(
                chain_path, certificate_path, signer.file_path(FileRole.CERTIFICATE)
            )

            return await storage.store_cert(
                name,
                {
                    FileRole.CERTIFICATE: certificate_path,
                    FileRole.KEY: key_path,
                    FileRole.CHAIN: chain_path,
                },
                self._signer_attributes(signer),
            )

    async def _sign_supplied_csr(
        self,
        name: str,
        signer: Certificate,
        digest: str,
        lifetime_days: int,
        csr_contents: str | bytes,
        signed_type: SignedType,
        storage: CertStorage,
    ) -> str | None:
        self._check_signer(signer, signs_leaf=True)
        await self._check_name_free(name, storage)

        async with self.scratch_dir() as scratch_dir:
            csr_path = scratch_dir / "csr"
            ca_config_path = scratch_dir / "ca.conf"
            certificate_path = scratch_dir / "certificate"
            chain_path = scratch_dir / "chain"

            async with asyncio.TaskGroup() as tg:
                tg.create_task(write_file(csr_path, csr_contents))
                tg.create_task(
                    write_file(
                        ca_config_path,
                        self._loose_ca_config(
                            signer, scratch_dir, digest, lifetime_days, signed_type
                        ),
                    )
                )

            await self.openssl.ca_sign(ca_config_path, csr_path, certificate_path)
            await self.create_chain_file(
                chain_path, certificate_path, signer.file_path(FileRole.CERTIFICATE)
            )

            return await storage.store_cert(
                name,
                {FileRole.CERTIFICATE: certificate_path, FileRole.CHAIN: chain_path},
                self._signer_attributes(signer),
            )

    @staticmethod
    def _check_key_pair(certificate_text: str | bytes, private_key_text: str | bytes) -> None:
        """Raise KeyMismatchError unless the key belongs to the certificate."""
        try:
            cert = deserialize_certificate(_to_bytes(certificate_text))
            key = deserialize_private_key(_to_bytes(private_key_text))
        except (ValueError, TypeError) as e:
            raise CertAuthorityError(f"unreadable certificate or private key: {e}") from e

        if not key_matches_certificate(key, cert):
            raise KeyMismatchError("private key does not match the certificate")

    async def _verify_and_store_cert(
        self,
        name: str,
        certificate_text: str | bytes,
        storage: CertStorage,
        private_key_text: str | bytes | None,
        signer: Certificate | None,
        create_ca_files: bool,
        intermediate_only: bool,
    ) -> str | None:
        if signer is not None and not signer.has_files(FileRole.CERTIFICATE):
            raise SignerNotEligibleError(
                f"{signer.cert_type} certificate {signer.name!r} has no certificate file"
            )
        if private_key_text:
            self._check_key_pair(certificate_text, private_key_text)
        await self._check_name_free(name, storage)

        async with self.scratch_dir() as scratch_dir:
            files: dict[FileRole, Path] = {FileRole.CERTIFICATE: scratch_dir / "certificate"}
            attributes = BundleAttributes(intermediate_only=intermediate_only)

            async with asyncio.TaskGroup() as tg:
                tg.create_task(write_file(files[FileRole.CERTIFICATE], certificate_text))
                if private_key_text:
                    files[FileRole.KEY] = scratch_dir / "key"
                    tg.create_task(write_file(files[FileRole.KEY], private_key_text))
                if create_ca_files:
                    files[FileRole.INDEX] = scratch_dir / "index"
                    files[FileRole.SERIAL] = scratch_dir / "serial"
                    tg.create_task(
                        self.create_ca_files(files[FileRole.INDEX], files[FileRole.SERIAL])
                    )

            if signer is not None:
                anchor_path = signer.file_path(FileRole.CERTIFICATE)
                if _same_certificate(await read_bytes(anchor_path), certificate_text):
                    raise CertificateVerificationError(
                        ["openssl", "verify"],
                        None,
                        f"certificate is the signer {signer.name!r} itself",
                    )
                files[FileRole.CHAIN] = scratch_dir / "chain"
                attributes = BundleAttributes(
                    signer_type=signer.cert_type,
                    signer_name=signer.name,
                    intermediate_only=intermediate_only,
                )
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(
                        self.create_chain_file(
                            files[FileRole.CHAIN], files[FileRole.CERTIFICATE], anchor_path
                        )
                    )
                    tg.create_task(
                        self.openssl.verify(
                            anchor_path, files[FileRole.CERTIFICATE], partial_chain=True
                        )
                    )
            else:
                # Self-signed: the certificate is its own anchor.
                await self.openssl.verify(
                    files[FileRole.CERTIFICATE], files[FileRole.CERTIFICATE], partial_chain=False
                )

            return await storage.store_cert(name, files, attributes)
