"""Argument lists for the openssl subcommands used by the certificate authority.

Pure functions, so the exact command lines can be checked without running
openssl. Each list starts with the subcommand name.
"""

from pathlib import Path


def generate_key(output_path: Path, bits: int) -> list[str]:
    return ["genrsa", "-out", str(output_path), str(bits)]


def create_csr(config_path: Path, key_bits: int, key_path: Path, csr_path: Path) -> list[str]:
    return [
        "req",
        "-new",
        "-config", str(config_path),
        "-newkey", f"rsa:{key_bits}",
        "-keyout", str(key_path),
        "-out", str(csr_path),
    ]


def self_sign(config_path: Path, days: int, key_path: Path, certificate_path: Path) -> list[str]:
    return [
        "req",
        "-x509",
        "-new",
        "-config", str(config_path),
        "-days", str(days),
        "-key", str(key_path),
        "-out", str(certificate_path),
    ]


def ca_sign(
    config_path: Path,
    csr_path: Path,
    certificate_path: Path,
    extensions: str | None = None,
    days: int | None = None,
    digest: str | None = None,
    batch: bool = True,
) -> list[str]:
    """Build ``openssl ca`` arguments.

    Options left as None fall back to the values in the CA config.
    """
    args = ["ca"]
    if batch:
        args.append("-batch")
    args += ["-config", str(config_path)]
    if extensions:
        args += ["-extensions", extensions]
    if days is not None:
        args += ["-days", str(days)]
    args.append("-notext")
    if digest:
        args += ["-md", digest]
    args += ["-in", str(csr_path), "-out", str(certificate_path)]
    return args


def verify(anchor_path: Path, certificate_path: Path, partial_chain: bool = False) -> list[str]:
    args = ["verify"]
    # -partial_chain lets an intermediate serve as the anchor on its own
    if partial_chain:
        args.append("-partial_chain")
    return args + ["-CAfile", str(anchor_path), str(certificate_path)]


def render_text(certificate_path: Path) -> list[str]:
    return ["x509", "-text", "-noout", "-in", str(certificate_path)]
