"""Prepare storage directories and build the storages and certificate authority."""

from pathlib import Path

from .cert_storage import CertStorage
from .certificate_authority import CertificateAuthority
from .config import REQUIRED_FILES, ServerConfig
from .errors import ExitCode, StartupError
from .logging_config import LOGGER
from .models import CertType
from .openssl import OpenSsl


def ensure_dir(path: Path) -> Path:
    """Make sure ``path`` is a directory, creating it and its parents if missing.

    Raises:
        StartupError: DIR_IS_FILE if something other than a directory is in
            the way, DIR_CREATION_FAILED if the directory cannot be created
    """
    if path.exists():
        if not path.is_dir():
            raise StartupError(f"{path} exists and is not a directory", ExitCode.DIR_IS_FILE)
        return path

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StartupError(
            f"could not create directory {path}: {e}", ExitCode.DIR_CREATION_FAILED
        ) from e

    LOGGER.info("Created directory %s", path)
    return path


def build_storages(config: ServerConfig) -> dict[CertType, CertStorage]:
    """Create each category's directory and its CertStorage."""
    ensure_dir(config.storage_dir)
    return {
        cert_type: CertStorage(
            cert_type, ensure_dir(config.category_dir(cert_type)), REQUIRED_FILES[cert_type]
        )
        for cert_type in CertType
    }


def build_authority(config: ServerConfig) -> CertificateAuthority:
    """Create the scratch directory and a CertificateAuthority running openssl."""
    return CertificateAuthority(
        ensure_dir(config.scratch_dir),
        OpenSsl(config.openssl_path, timeout=config.tool_timeout),
        keep_scratch=config.keep_scratch,
    )
