"""Exception types for certificate authority operations."""

from collections.abc import Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes reported by the server entry point."""

    NO_ERROR = 0
    UNCAUGHT_EXCEPTION = 1
    DIR_IS_FILE = 2
    DIR_CREATION_FAILED = 3
    SHOULD_NEVER_GET_HERE = 255


class CertAuthorityError(Exception):
    """Base class for operational certificate authority errors."""


class InvalidNameError(CertAuthorityError, ValueError):
    """Bundle name cannot be used as a directory name."""


class InvalidConfigValueError(CertAuthorityError, ValueError):
    """Subject field, domain name or digest cannot go into an openssl config."""


class SignerNotEligibleError(CertAuthorityError):
    """Signer bundle may not sign the requested kind of certificate."""


class KeyMismatchError(CertAuthorityError):
    """Private key does not belong to the certificate it was supplied with."""


class ToolExecutionError(CertAuthorityError):
    """The openssl command exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str) -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"openssl {' '.join(self.command[1:2])} exited with status {returncode}: "
            f"{stderr.strip()}"
        )


class CertificateVerificationError(ToolExecutionError):
    """Certificate did not verify against its anchor."""


class StartupError(CertAuthorityError):
    """Storage or scratch directories could not be prepared."""

    def __init__(self, message: str, exit_code: ExitCode) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class InvariantViolation(AssertionError):
    """Something that should never happen did.

    Not a CertAuthorityError: workflows re-raise it rather than reporting an
    ordinary failure.
    """
