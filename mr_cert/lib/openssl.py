"""Async wrapper around the openssl command line tool."""

import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path

from . import openssl_args
from .errors import CertificateVerificationError, ToolExecutionError
from .logging_config import LOGGER, cert_context


@dataclass
class ToolResult:
    """Captured output of a successful openssl run."""

    stdout: str
    stderr: str


class OpenSsl:
    """Runs openssl subcommands as subprocesses.

    Every call raises ToolExecutionError when openssl exits non-zero, so a
    failing step aborts whatever workflow awaited it.
    """

    def __init__(self, openssl_path: str = "openssl", timeout: float | None = None) -> None:
        """Initialize the wrapper.

        Args:
            openssl_path: Executable to run
            timeout: Seconds before a running process is killed; None waits forever
        """
        self.openssl_path = openssl_path
        self.timeout = timeout

    async def run(self, args: list[str]) -> ToolResult:
        """Run ``openssl <args>`` and return its output.

        Raises:
            ToolExecutionError: If openssl exits non-zero or times out
        """
        command = [self.openssl_path, *args]
        LOGGER.debug("Running %s", " ".join(command), extra=cert_context(command=args[0]))

        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except TimeoutError as e:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            LOGGER.warning(
                "openssl %s timed out after %ss", args[0], self.timeout,
                extra=cert_context(command=args[0]),
            )
            raise ToolExecutionError(command, None, f"timed out after {self.timeout}s") from e

        stdout_text = stdout.decode("utf-8", "replace")
        stderr_text = stderr.decode("utf-8", "replace")
        if process.returncode != 0:
            LOGGER.debug(
                "openssl %s failed: %s", args[0], stderr_text.strip(),
                extra=cert_context(command=args[0], returncode=process.returncode),
            )
            raise ToolExecutionError(command, process.returncode, stderr_text)

        return ToolResult(stdout=stdout_text, stderr=stderr_text)

    async def generate_key(self, output_path: Path, bits: int) -> None:
        """Create an RSA private key of ``bits`` length."""
        await self.run(openssl_args.generate_key(output_path, bits))

    async def create_csr(
        self, config_path: Path, key_bits: int, key_path: Path, csr_path: Path
    ) -> None:
        """Create a new key and a CSR for it from a request config."""
        await self.run(openssl_args.create_csr(config_path, key_bits, key_path, csr_path))

    async def self_sign(
        self, config_path: Path, days: int, key_path: Path, certificate_path: Path
    ) -> None:
        """Create a self-signed certificate for an existing key."""
        await self.run(openssl_args.self_sign(config_path, days, key_path, certificate_path))

    async def ca_sign(
        self,
        config_path: Path,
        csr_path: Path,
        certificate_path: Path,
        extensions: str | None = None,
        days: int | None = None,
        digest: str | None = None,
        batch: bool = True,
    ) -> None:
        """Sign a CSR with the signer referenced by a CA config.

        Updates the signer's index and serial files.
        """
        await self.run(
            openssl_args.ca_sign(
                config_path,
                csr_path,
                certificate_path,
                extensions=extensions,
                days=days,
                digest=digest,
                batch=batch,
            )
        )

    async def verify(
        self, anchor_path: Path, certificate_path: Path, partial_chain: bool = False
    ) -> None:
        """Verify a certificate against an anchor certificate.

        Args:
            anchor_path: Trusted certificate
            certificate_path: Certificate to check
            partial_chain: Accept a non self-signed anchor. Must be False when
                the anchor is the certificate itself.

        Raises:
            CertificateVerificationError: If verification fails
        """
        try:
            await self.run(
                openssl_args.verify(anchor_path, certificate_path, partial_chain=partial_chain)
            )
        except ToolExecutionError as e:
            raise CertificateVerificationError(e.command, e.returncode, e.stderr) from e

    async def render_text(self, certificate_path: Path) -> str:
        """Return the human readable dump of a certificate."""
        result = await self.run(openssl_args.render_text(certificate_path))
        return result.stdout
