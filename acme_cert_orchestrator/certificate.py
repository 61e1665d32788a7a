"""
Certificate material, key generation and export utilities.
"""

import io
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtensionOID, NameOID

from acme_cert_orchestrator import utils, validation

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537
ARCHIVE_PASSWORD = "certimate"


class KeyType(str, Enum):
    """Certificate key algorithms that can be requested from the CA."""

    RSA2048 = "RSA2048"
    RSA3072 = "RSA3072"
    RSA4096 = "RSA4096"
    RSA8192 = "RSA8192"
    EC256 = "EC256"
    EC384 = "EC384"
    EC512 = "EC512"

    @property
    def is_rsa(self) -> bool:
        return self.value.startswith("RSA")


_EC_CURVES = {
    KeyType.EC256: ec.SECP256R1,
    KeyType.EC384: ec.SECP384R1,
    KeyType.EC512: ec.SECP521R1,
}


def generate_private_key(key_type: KeyType | str = KeyType.RSA2048):
    """
    Generate a private key for the given key type.

    Args:
        key_type: One of the KeyType values.

    Returns:
        The generated RSA or EC private key.

    Raises:
        ValueError: If the key type is unsupported.
    """
    key_type = KeyType(key_type)
    if key_type.is_rsa:
        key_size = int(key_type.value[3:])
        logger.info(f"Generating {key_size}-bit RSA private key")
        return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)

    logger.info(f"Generating {key_type.value} EC private key")
    return ec.generate_private_key(_EC_CURVES[key_type]())


def generate_csr(domains: list[str], private_key) -> x509.CertificateSigningRequest:
    """
    Generate a Certificate Signing Request (CSR).

    The first domain is used as the Common Name; all domains are added to the
    SAN extension in order, without duplicates.

    Args:
        domains: Domain names for the certificate.
        private_key: Private key to sign the CSR with.

    Returns:
        x509.CertificateSigningRequest: Generated CSR.
    """
    if not domains:
        raise ValueError("At least one domain is required")

    san_domains: list[str] = []
    for domain in domains:
        if domain not in san_domains:
            san_domains.append(domain)

    logger.info(f"Creating CSR for domains: {', '.join(san_domains)}")
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, san_domains[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in san_domains]), critical=False
        )
        .sign(private_key, hashes.SHA256())
    )


def key_algorithm_of(cert: x509.Certificate) -> str:
    """
    Describe the public key algorithm of a certificate, e.g. 'RSA2048' or 'EC256'.
    """
    public_key = cert.public_key()

    if isinstance(public_key, rsa.RSAPublicKey):
        return f"RSA{public_key.key_size}" if public_key.key_size else "RSA"

    if isinstance(public_key, ec.EllipticCurvePublicKey):
        size = public_key.curve.key_size
        # P-521 is requested as EC512.
        if size == 521:
            return KeyType.EC512.value
        return f"EC{size}" if size else "EC"

    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return "ED25519"

    return ""


def ari_certificate_id(certificate: str) -> str:
    """
    Compute the ARI certificate identifier of a PEM certificate.

    The identifier is base64url(AuthorityKeyIdentifier) '.' base64url(serial),
    as used in renewalInfo requests and in the 'replaces' field of new orders.

    Raises:
        ValueError: If the certificate has no Authority Key Identifier.
    """
    cert = validation.parse_leaf_certificate(certificate)
    try:
        aki = cert.extensions.get_extension_for_oid(ExtensionOID.AUTHORITY_KEY_IDENTIFIER).value
    except x509.ExtensionNotFound:
        raise ValueError("Certificate has no Authority Key Identifier") from None

    if not isinstance(aki, x509.AuthorityKeyIdentifier) or aki.key_identifier is None:
        raise ValueError("Certificate has no Authority Key Identifier")

    serial = cert.serial_number
    serial_bytes = serial.to_bytes((serial.bit_length() + 8) // 8, "big")
    return f"{utils.b64url(aki.key_identifier)}.{utils.b64url(serial_bytes)}"


@dataclass(frozen=True)
class CertificateMaterial:
    """An issued certificate, derived entirely from its PEM chain."""

    full_chain_pem: str
    private_key_pem: str
    issuer_pem: str
    serial_number_hex: str
    subject_alt_names: tuple[str, ...]
    issuer_org: str
    not_before: datetime
    not_after: datetime
    key_algorithm: str

    def __post_init__(self):
        if self.not_before >= self.not_after:
            raise ValueError("Certificate validity must start before it ends")
        if not self.subject_alt_names:
            raise ValueError("Leaf certificate has no subject alternative names")

    @classmethod
    def from_pem(cls, full_chain_pem: str, private_key_pem: str, issuer_pem: str = "") -> "CertificateMaterial":
        """
        Parse a PEM chain and its private key into certificate material.

        Args:
            full_chain_pem: Leaf certificate followed by its issuers.
            private_key_pem: Private key of the leaf certificate.
            issuer_pem: Issuer chain; extracted from full_chain_pem if empty.

        Raises:
            ValueError: If the chain cannot be parsed or violates the material invariants.
        """
        full_chain_pem = full_chain_pem.strip()
        leaf = validation.parse_leaf_certificate(full_chain_pem)

        if not issuer_pem:
            _, issuer_pem = validation.split_certificate_chain(full_chain_pem)

        _, sans = validation.get_certificate_domains(leaf)
        issuer_orgs = [
            attr.value
            for attr in leaf.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        ]

        return cls(
            full_chain_pem=full_chain_pem,
            private_key_pem=private_key_pem.strip(),
            issuer_pem=issuer_pem.strip(),
            serial_number_hex=format(leaf.serial_number, "X"),
            subject_alt_names=tuple(sans),
            issuer_org=";".join(str(org) for org in issuer_orgs),
            not_before=leaf.not_valid_before_utc,
            not_after=leaf.not_valid_after_utc,
            key_algorithm=key_algorithm_of(leaf),
        )

    def __repr__(self) -> str:
        return (
            f"<CertificateMaterial serial={self.serial_number_hex} "
            f"sans={list(self.subject_alt_names)} not_after={self.not_after.isoformat()}>"
        )


def export_archive(certificate_pem: str, private_key_pem: str, file_format: str = "PEM") -> bytes:
    """
    Package a certificate and its key into a zip archive.

    Args:
        certificate_pem: Certificate chain in PEM format.
        private_key_pem: Private key in PEM format.
        file_format: 'PEM' (certbundle.pem + privkey.pem) or 'PFX' (cert.pfx +
            pfx-password.txt).

    Returns:
        bytes: The zip archive.

    Raises:
        ValueError: If the format is unsupported.
    """
    file_format = (file_format or "PEM").upper()
    buf = io.BytesIO()

    if file_format == "PEM":
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("certbundle.pem", certificate_pem)
            archive.writestr("privkey.pem", private_key_pem)
        return buf.getvalue()

    if file_format == "PFX":
        chain = validation.parse_certificate_chain(certificate_pem)
        if not chain:
            raise ValueError("No certificates found in PEM data")
        key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
        pfx = pkcs12.serialize_key_and_certificates(
            name=None,
            key=key,
            cert=chain[0],
            cas=chain[1:] or None,
            encryption_algorithm=serialization.BestAvailableEncryption(ARCHIVE_PASSWORD.encode()),
        )
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("cert.pfx", pfx)
            archive.writestr("pfx-password.txt", ARCHIVE_PASSWORD)
        return buf.getvalue()

    raise ValueError(f"Unsupported archive format: '{file_format}'")
