"""
Decide whether two certificate representations denote the same certificate.

equal_pem() is the authoritative check: it compares DER bytes, because two PEM
renderings of one certificate are not guaranteed to be textually identical.
looks_like_same_metadata() is a cheap pre-filter for vendor listings that do
not include certificate content; a mismatch means "different" without any
further network call.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography import x509

from acme_cert_orchestrator import validation


@dataclass(frozen=True)
class CertificateMetadata:
    """Identity fields of a certificate as reported by a local parse or a vendor listing."""

    common_name: str
    subject_alt_names: tuple[str, ...]
    not_before: datetime | None = None
    not_after: datetime | None = None

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> "CertificateMetadata":
        cn, sans = validation.get_certificate_domains(cert)
        return cls(
            common_name=cn,
            subject_alt_names=tuple(sans),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
        )

    @classmethod
    def from_pem(cls, certificate: str) -> "CertificateMetadata":
        return cls.from_certificate(validation.parse_leaf_certificate(certificate))


def equal_pem(pem_a: str, pem_b: str) -> bool:
    """
    Compare the leaf certificates of two PEM strings byte for byte.

    Returns:
        bool: True if both decode to identical DER; False otherwise, including
        when either side cannot be decoded.
    """
    try:
        blocks_a = validation.pem_to_der_blocks(pem_a or "")
        blocks_b = validation.pem_to_der_blocks(pem_b or "")
    except ValueError:
        return False

    if not blocks_a or not blocks_b:
        return False

    return blocks_a[0] == blocks_b[0]


def _to_second(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def looks_like_same_metadata(local: CertificateMetadata, remote: CertificateMetadata) -> bool:
    """
    Pre-filter: compare common name, SAN list and validity period.

    The common name is compared case-insensitively, the SAN list exactly and
    in order, and validity bounds at second resolution. A validity bound the
    vendor did not report (None) is not compared.
    """
    if local.common_name.casefold() != remote.common_name.casefold():
        return False

    if tuple(local.subject_alt_names) != tuple(remote.subject_alt_names):
        return False

    for mine, theirs in ((local.not_before, remote.not_before), (local.not_after, remote.not_after)):
        if theirs is None:
            continue
        if mine is None or _to_second(mine) != _to_second(theirs):
            return False

    return True
