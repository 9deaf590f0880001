"""Data models for stored certificate bundles."""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, NotRequired, TypedDict

from .errors import InvariantViolation

ATTRIBUTES_FILE_NAME = "_attributes_"
RANDOM_FILE_NAME = "random"


class CertType(StrEnum):
    """Certificate category, one storage directory each."""

    ROOT = "root"
    INTERMEDIATE = "intermediate"
    SERVER = "server"
    CLIENT = "client"

    @property
    def is_signing(self) -> bool:
        """Whether certificates of this category may sign others."""
        return self in (CertType.ROOT, CertType.INTERMEDIATE)


class FileRole(StrEnum):
    """Logical files a bundle may hold; each is stored under its own name."""

    CERTIFICATE = "certificate"
    KEY = "key"
    INDEX = "index"
    SERIAL = "serial"
    CHAIN = "chain"

    @classmethod
    def coerce(cls, role: "FileRole | str") -> "FileRole":
        """Return the FileRole for a role or its name.

        Raises:
            InvariantViolation: If the name is not a known role
        """
        try:
            return cls(role)
        except ValueError as e:
            raise InvariantViolation(f"unknown file role: {role!r}") from e


SIGNING_FILES = frozenset(
    {FileRole.CERTIFICATE, FileRole.KEY, FileRole.INDEX, FileRole.SERIAL}
)


@dataclass(frozen=True)
class SignerRef:
    """Which bundle, in which category, issues a new certificate."""

    type: CertType
    name: str


@dataclass(frozen=True)
class BundleAttributes:
    """Attributes stored alongside a bundle's files.

    Known keys are typed; any other keys found in the sidecar file are kept
    in ``extra`` and written back unchanged.
    """

    signer_type: CertType | None = None
    signer_name: str | None = None
    intermediate_only: bool | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        if self.signer_type is not None:
            data["signer_type"] = str(self.signer_type)
        if self.signer_name is not None:
            data["signer_name"] = self.signer_name
        if self.intermediate_only is not None:
            data["intermediate_only"] = self.intermediate_only
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BundleAttributes":
        extra = dict(data)
        signer_type = None
        raw_signer_type = extra.pop("signer_type", None)
        if raw_signer_type is not None:
            try:
                signer_type = CertType(raw_signer_type)
            except ValueError:
                extra["signer_type"] = raw_signer_type

        signer_name = extra.pop("signer_name", None)
        intermediate_only = extra.pop("intermediate_only", None)

        return cls(
            signer_type=signer_type,
            signer_name=None if signer_name is None else str(signer_name),
            intermediate_only=None if intermediate_only is None else bool(intermediate_only),
            extra=extra,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "BundleAttributes":
        """Parse the sidecar file contents.

        Raises:
            ValueError: If the text is not a JSON object
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("attributes must be a JSON object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class Certificate:
    """A loaded bundle: name, location, the roles present and its attributes.

    Produced by CertStorage and read-only to everything else. A bundle that
    could not be loaded is represented with an empty ``files`` set, so it
    fails every ``has_files`` check.
    """

    name: str
    cert_type: CertType
    directory: Path
    files: frozenset[FileRole] = frozenset()
    extra_files: frozenset[str] = frozenset()
    attributes: BundleAttributes = field(default_factory=BundleAttributes)

    def has_files(self, *roles: FileRole | str) -> bool:
        """Return True if every requested role is present."""
        return all(FileRole.coerce(role) in self.files for role in roles)

    def file_path(self, role: FileRole | str) -> Path:
        """Path of a role's file; existence is not checked."""
        return self.directory / FileRole.coerce(role).value

    @property
    def random_path(self) -> Path:
        """Path of the openssl RANDFILE kept next to a signer's files."""
        return self.directory / RANDOM_FILE_NAME

    @property
    def intermediate_only(self) -> bool:
        return bool(self.attributes.intermediate_only)

    @property
    def is_signing_capable(self) -> bool:
        return self.cert_type.is_signing and self.has_files(*SIGNING_FILES)


class CertificateDetails(TypedDict):
    """Parsed certificate fields shown by the read-side API."""

    serialNumber: str
    commonName: NotRequired[str]
    issuer: str
    subject: str
    notBefore: str
    notAfter: str
    subjectAltNames: list[str]
