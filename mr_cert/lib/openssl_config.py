"""Configuration file text for the openssl ``req`` and ``ca`` commands.

Pure string building: nothing here touches the filesystem or runs openssl.

Policies:
    policy_strict  used when signing intermediates; the request's country,
                   state and organization must match the signer's own.
    policy_loose   used when signing server and client certificates; only
                   the common name is required.

See <https://jamielinux.com/docs/openssl-certificate-authority/index.html>.
"""

import re
from collections.abc import Sequence
from enum import StrEnum
from pathlib import Path

from .errors import InvalidConfigValueError

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
# Characters the config parser treats as escapes, variables, comments or quotes
_SPECIAL_CHARS = re.compile(r"([\\$#\"'])")
_DNS_NAME = re.compile(r"(\*\.)?[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*\.?")
_DIGEST = re.compile(r"[A-Za-z0-9-]+")
_MAX_DNS_NAME_LENGTH = 253


class SignedType(StrEnum):
    """Kind of leaf certificate being signed."""

    SERVER = "server"
    CLIENT = "client"


CA_EXTENSIONS = [
    "subjectKeyIdentifier   = hash",
    "authorityKeyIdentifier = keyid:always,issuer",
    "basicConstraints       = critical, CA:true",
    "keyUsage               = critical, digitalSignature, cRLSign, keyCertSign",
]

INTERMEDIATE_CA_EXTENSIONS = [
    "subjectKeyIdentifier   = hash",
    "authorityKeyIdentifier = keyid:always,issuer",
    "basicConstraints       = critical, CA:true, pathlen:0",
    "keyUsage               = critical, digitalSignature, cRLSign, keyCertSign",
]

LEAF_EXTENSIONS: dict[SignedType, list[str]] = {
    SignedType.SERVER: [
        "basicConstraints       = CA:FALSE",
        "subjectKeyIdentifier   = hash",
        "authorityKeyIdentifier = keyid,issuer:always",
        "keyUsage               = critical, digitalSignature, keyEncipherment",
        "extendedKeyUsage       = serverAuth",
    ],
    SignedType.CLIENT: [
        "basicConstraints       = CA:FALSE",
        "subjectKeyIdentifier   = hash",
        "authorityKeyIdentifier = keyid,issuer",
        "keyUsage               = critical, nonRepudiation, digitalSignature, keyEncipherment",
        "extendedKeyUsage       = clientAuth, emailProtection",
    ],
}

INTERMEDIATE_EXTENSIONS_SECTION = "v3_intermediate_ca"


def config_value(field: str, value: str) -> str:
    """Escape free text for use as a config value.

    Raises:
        InvalidConfigValueError: If the text holds control characters
    """
    if _CONTROL_CHARS.search(value):
        raise InvalidConfigValueError(f"{field} contains control characters: {value!r}")
    return _SPECIAL_CHARS.sub(r"\\\1", value)


def check_dns_name(name: str) -> str:
    """Return ``name`` if it is a DNS name, optionally with a leading wildcard label."""
    if len(name) > _MAX_DNS_NAME_LENGTH or not _DNS_NAME.fullmatch(name):
        raise InvalidConfigValueError(f"not a DNS name: {name!r}")
    return name


def check_digest(digest: str) -> str:
    if not _DIGEST.fullmatch(digest):
        raise InvalidConfigValueError(f"not a digest name: {digest!r}")
    return digest


def certificate_signing_request_config(
    digest: str,
    common_name: str,
    country: str,
    state: str,
    locality: str,
    organization: str,
    organizational_unit: str,
    email_address: str,
    is_root_ca: bool,
    alternate_domain_names: Sequence[str] = (),
) -> str:
    """Build the ``openssl req`` config for a new key's CSR.

    Args:
        digest: Message digest name, e.g. ``sha256``
        common_name: CN of the subject
        country: Two letter country code
        state: State or province
        locality: Locality
        organization: Organization
        organizational_unit: Omitted from the DN when empty
        email_address: Omitted from the DN when empty
        is_root_ca: Add CA extensions for ``req -x509`` self-signing
        alternate_domain_names: DNS names for a subjectAltName request extension

    Returns:
        Config file text

    Raises:
        InvalidConfigValueError: If a subject field holds control characters,
            an alternate name is not a DNS name or the digest is not a name
    """
    config = [
        "[ req ]",
        "prompt             = no",
        "encrypt_key        = no",
        f"default_md         = {check_digest(digest)}",
        "distinguished_name = dn",
    ]
    if alternate_domain_names:
        config.append("req_extensions     = req_ext")
    if is_root_ca:
        config.append("x509_extensions    = x509_ext")

    config += [
        "",
        "[ dn ]",
        f"CN = {config_value('common name', common_name)}",
        f"O = {config_value('organization', organization)}",
    ]
    if organizational_unit:
        config.append(f"OU = {config_value('organizational unit', organizational_unit)}")
    config += [
        f"C = {config_value('country', country)}",
        f"ST = {config_value('state', state)}",
        f"L = {config_value('locality', locality)}",
    ]
    if email_address:
        config.append(f"emailAddress = {config_value('email address', email_address)}")

    if alternate_domain_names:
        names = ", ".join(f"DNS:{check_dns_name(name)}" for name in alternate_domain_names)
        config += ["", "[ req_ext ]", f"subjectAltName = {names}"]

    if is_root_ca:
        config += ["", "[ x509_ext ]", *CA_EXTENSIONS]

    return "\n".join(config) + "\n"


def _ca_section(
    index_path: Path,
    serial_path: Path,
    rand_path: Path,
    key_path: Path,
    certificate_path: Path,
    output_dir: Path,
) -> list[str]:
    return [
        "[ ca ]",
        "default_ca             = CA_default",
        "",
        "[ CA_default ]",
        f"new_certs_dir          = {output_dir}",
        f"database               = {index_path}",
        f"serial                 = {serial_path}",
        f"RANDFILE               = {rand_path}",
        "",
        f"private_key            = {key_path}",
        f"certificate            = {certificate_path}",
        "",
        "preserve               = no",
        "unique_subject         = no",
    ]


def strict_ca_config(
    index_path: Path,
    serial_path: Path,
    rand_path: Path,
    key_path: Path,
    certificate_path: Path,
    output_dir: Path,
) -> str:
    """Build the ``openssl ca`` config used to sign intermediate CAs.

    The signing command selects the ``v3_intermediate_ca`` extensions and
    passes the digest and lifetime on the command line.
    """
    config = _ca_section(index_path, serial_path, rand_path, key_path, certificate_path, output_dir)
    config += [
        "policy                 = policy_strict",
        f"x509_extensions        = {INTERMEDIATE_EXTENSIONS_SECTION}",
        "",
        "[ policy_strict ]",
        "countryName            = match",
        "stateOrProvinceName    = match",
        "organizationName       = match",
        "localityName           = optional",
        "organizationalUnitName = optional",
        "commonName             = supplied",
        "emailAddress           = optional",
        "",
        f"[ {INTERMEDIATE_EXTENSIONS_SECTION} ]",
        *INTERMEDIATE_CA_EXTENSIONS,
    ]
    return "\n".join(config) + "\n"


def loose_ca_config(
    index_path: Path,
    serial_path: Path,
    rand_path: Path,
    key_path: Path,
    certificate_path: Path,
    output_dir: Path,
    digest: str,
    lifetime_days: int,
    signed_type: SignedType,
) -> str:
    """Build the ``openssl ca`` config used to sign server and client certificates.

    Extensions requested in the CSR (the subjectAltName) are copied into the
    certificate, except those ``x509_ext`` already sets.
    """
    config = _ca_section(index_path, serial_path, rand_path, key_path, certificate_path, output_dir)
    config += [
        f"default_md             = {check_digest(digest)}",
        f"default_days           = {lifetime_days}",
        "policy                 = policy_loose",
        "copy_extensions        = copy",
        "x509_extensions        = x509_ext",
        "",
        "[ policy_loose ]",
        "countryName            = optional",
        "stateOrProvinceName    = optional",
        "localityName           = optional",
        "organizationName       = optional",
        "organizationalUnitName = optional",
        "commonName             = supplied",
        "emailAddress           = optional",
        "",
        "[ x509_ext ]",
        *LEAF_EXTENSIONS[SignedType(signed_type)],
    ]
    return "\n".join(config) + "\n"
