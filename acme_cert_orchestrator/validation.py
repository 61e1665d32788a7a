"""
PEM parsing and validation utilities.
"""

import base64
import binascii
import logging
import re
from datetime import datetime, timezone

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtensionOID, NameOID

logger = logging.getLogger(__name__)

CERTIFICATE_BLOCK = re.compile(
    r"-----BEGIN CERTIFICATE-----(?P<body>.*?)-----END CERTIFICATE-----",
    re.DOTALL,
)


def normalize_certificate(certificate: str) -> str:
    """
    Normalize certificate line endings and ensure proper formatting.

    Args:
        certificate (str): Certificate in PEM format.

    Returns:
        str: Normalized certificate.
    """
    certificate = certificate.replace("\r\n", "\n").replace("\r", "\n").strip()

    if not certificate.endswith("\n"):
        certificate = certificate + "\n"

    return certificate


def validate_certificate_format(certificate: str) -> tuple[bool, str]:
    """
    Validate the format of a PEM certificate.

    Args:
        certificate (str): Certificate in PEM format.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    if not certificate.strip().startswith("-----BEGIN CERTIFICATE-----"):
        return (False, "Certificate does not start with BEGIN CERTIFICATE marker")

    if not certificate.strip().endswith("-----END CERTIFICATE-----"):
        return (False, "Certificate does not end with END CERTIFICATE marker")

    return (True, "")


def pem_to_der_blocks(certificate: str) -> list[bytes]:
    """
    Decode every certificate block of a PEM bundle to DER.

    Whitespace inside a block (line wrapping, CRLF, indentation) is ignored,
    so two PEM renderings of the same certificate decode to identical bytes.

    Raises:
        ValueError: If a block is not valid base64.
    """
    blocks = []
    for i, match in enumerate(CERTIFICATE_BLOCK.finditer(certificate), 1):
        body = "".join(match.group("body").split())
        try:
            blocks.append(base64.b64decode(body, validate=True))
        except binascii.Error as e:
            raise ValueError(f"Failed to decode certificate {i}: {e}") from None
    return blocks


def parse_certificate_chain(certificate: str) -> list[x509.Certificate]:
    """
    Parse a PEM certificate chain into individual certificate objects.

    Args:
        certificate (str): Certificate chain in PEM format.

    Returns:
        list[x509.Certificate]: List of parsed certificate objects.

    Raises:
        ValueError: If certificate parsing fails.
    """
    certificates = []

    for i, der in enumerate(pem_to_der_blocks(certificate), 1):
        try:
            certificates.append(x509.load_der_x509_certificate(der))
        except Exception as e:
            raise ValueError(f"Failed to parse certificate {i}: {e}") from None

    return certificates


def parse_leaf_certificate(certificate: str) -> x509.Certificate:
    """
    Parse the first certificate of a PEM bundle.

    Raises:
        ValueError: If the bundle holds no certificate or it cannot be parsed.
    """
    certificates = parse_certificate_chain(certificate)
    if not certificates:
        raise ValueError("No certificates found in PEM data")
    return certificates[0]


def split_certificate_chain(certificate: str) -> tuple[str, str]:
    """
    Split a PEM chain into the leaf certificate and the rest of the chain.

    Returns:
        tuple[str, str]: (leaf_pem, issuer_chain_pem); the issuer part is empty
        for a single certificate.
    """
    blocks = [m.group(0) for m in CERTIFICATE_BLOCK.finditer(certificate)]
    if not blocks:
        return ("", "")
    return (blocks[0], "\n".join(blocks[1:]))


def get_certificate_domains(cert: x509.Certificate) -> tuple[str, list[str]]:
    """
    Extract CN and SANs from a certificate.

    Args:
        cert (x509.Certificate): Certificate object.

    Returns:
        tuple[str, list[str]]: (common_name, subject_alternative_names)
    """
    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    cn = cn_attrs[0].value if cn_attrs else ""
    if isinstance(cn, bytes):
        cn = cn.decode("utf-8", errors="replace")

    sans: list[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        san_value = san_ext.value

        if isinstance(san_value, x509.SubjectAlternativeName):
            sans = san_value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return (cn, sans)


def verify_certificate_covers_domain(cert: x509.Certificate, domain: str) -> tuple[bool, str]:
    """
    Verify that a certificate covers a specific domain.

    Args:
        cert (x509.Certificate): Certificate object.
        domain (str): Domain to verify.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    cn, sans = get_certificate_domains(cert)
    names = {name.casefold() for name in sans}
    if cn:
        names.add(cn.casefold())

    if domain.casefold() in names:
        return (True, "")

    return (
        False,
        f"Certificate does not cover domain '{domain}'. "
        f"Certificate is for: CN={cn}, SANs={sans}",
    )


def validate_certificate(certificate: str, now: datetime | None = None) -> tuple[bool, str]:
    """
    Validate that a PEM certificate parses and has not expired.

    Args:
        certificate (str): Certificate in PEM format.
        now (datetime | None): Reference time (defaults to the current UTC time).

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    try:
        cert = parse_leaf_certificate(certificate)
    except ValueError as e:
        return (False, str(e))

    now = now or datetime.now(timezone.utc)
    not_after = cert.not_valid_after_utc
    if not_after < now:
        return (False, f"Certificate has expired at {not_after.strftime('%Y-%m-%dT%H:%M:%SZ')}")

    return (True, "")


def validate_private_key(private_key: str) -> tuple[bool, str]:
    """
    Validate that a PEM private key can be loaded.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    try:
        serialization.load_pem_private_key(private_key.encode(), password=None)
    except (ValueError, TypeError) as e:
        return (False, f"Failed to parse private key: {e}")
    return (True, "")


def validate_certificate_chain(certificate: str, expected_domain: str) -> tuple[bool, str, int]:
    """
    Validate a complete certificate chain.

    Args:
        certificate (str): Certificate chain in PEM format.
        expected_domain (str): Domain that should be covered by the certificate.

    Returns:
        tuple[bool, str, int]: (is_valid, error_message, cert_count)
    """
    cert_count = certificate.count("-----BEGIN CERTIFICATE-----")

    if cert_count == 0:
        return (False, "No certificates found in chain", 0)

    try:
        certificates = parse_certificate_chain(certificate)

        if len(certificates) != cert_count:
            return (
                False,
                f"Certificate count mismatch: found {cert_count} markers but parsed {len(certificates)}",
                cert_count,
            )

        is_valid, error_msg = verify_certificate_covers_domain(certificates[0], expected_domain)
        if not is_valid:
            return (False, error_msg, cert_count)

        for i, cert in enumerate(certificates, 1):
            issuer_cn = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
            logger.debug(f"Certificate {i}: Issued by {issuer_cn[0].value if issuer_cn else 'N/A'}")
        return (True, "", cert_count)
    except ValueError as e:
        return (False, f"Failed to validate certificate chain: {e}", cert_count)
