"""Configuration dataclasses."""

from dataclasses import dataclass
from pathlib import Path

from .models import SIGNING_FILES, CertType, FileRole

CATEGORY_DIRS: dict[CertType, str] = {
    CertType.ROOT: "root_certs",
    CertType.INTERMEDIATE: "intermediate_certs",
    CertType.SERVER: "server_certs",
    CertType.CLIENT: "client_certs",
}

REQUIRED_FILES: dict[CertType, frozenset[FileRole]] = {
    CertType.ROOT: SIGNING_FILES,
    CertType.INTERMEDIATE: SIGNING_FILES,
    CertType.SERVER: frozenset({FileRole.CERTIFICATE}),
    CertType.CLIENT: frozenset({FileRole.CERTIFICATE}),
}


@dataclass
class ServerConfig:
    """Runtime configuration for the certificate authority server."""

    storage_dir: Path
    scratch_dir: Path
    port: int = 8080
    host: str = "127.0.0.1"
    openssl_path: str = "openssl"
    log_level: str = "INFO"
    keep_scratch: bool = False
    tool_timeout: float | None = None

    def category_dir(self, cert_type: CertType) -> Path:
        """Return the storage directory for one certificate category."""
        return self.storage_dir / CATEGORY_DIRS[cert_type]


@dataclass
class KeyParameters:
    """Key and signing parameters for a new certificate."""

    lifetime_days: int
    key_length: int = 2048
    digest: str = "sha256"


@dataclass
class DistinguishedName:
    """X.509 Subject Distinguished Name.

    ``organizational_unit`` and ``email_address`` are optional and left out
    of generated configuration when empty.
    """

    common_name: str
    country: str
    state: str
    locality: str
    organization: str
    organizational_unit: str = ""
    email_address: str = ""
