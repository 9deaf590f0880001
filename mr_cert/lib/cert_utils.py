"""Certificate parsing helpers for uploaded and stored PEM files."""

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from .models import CertificateDetails


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize certificate from PEM bytes.

    Only the first certificate is read when several are concatenated.
    """
    return x509.load_pem_x509_certificate(pem_data)


def deserialize_private_key(pem_data: bytes) -> PrivateKeyTypes:
    """Deserialize an unencrypted private key from PEM bytes."""
    return serialization.load_pem_private_key(pem_data, password=None)


def _public_key_der(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_matches_certificate(key: PrivateKeyTypes, cert: x509.Certificate) -> bool:
    """Return True if ``key`` is the private half of the certificate's public key."""
    return _public_key_der(key.public_key()) == _public_key_der(cert.public_key())


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as hex with colons (e.g., 3A:F2:B1:...)."""
    serial_hex = f"{cert.serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def extract_certificate_details(cert: x509.Certificate) -> CertificateDetails:
    """Extract the fields shown alongside a stored certificate.

    Args:
        cert: X.509 certificate to describe

    Returns:
        CertificateDetails with serial, subject, issuer, validity and DNS SANs.
        commonName is included only when the subject has one.
    """
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        alt_names = san.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        alt_names = []

    details = CertificateDetails(
        serialNumber=get_certificate_serial_hex(cert),
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        notBefore=cert.not_valid_before_utc.isoformat(),
        notAfter=cert.not_valid_after_utc.isoformat(),
        subjectAltNames=alt_names,
    )

    common_names = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    if common_names and isinstance(common_names[0].value, str):
        details["commonName"] = common_names[0].value

    return details
