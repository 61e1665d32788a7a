"""
Upload-dedup protocol for vendor certificate stores.

Before creating a certificate in a vendor store, the store's inventory is
enumerated page by page and every record is compared with the local
certificate. The first match is reused; only when the inventory is exhausted
is a new record created. This makes repeated uploads of the same material
idempotent, as far as the vendor listing is complete. Two concurrent uploads
of the same certificate can still both miss each other between the listing
and the create; that race cannot be closed from the client side.
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from acme_cert_orchestrator import matcher
from acme_cert_orchestrator.cancellable import Context
from acme_cert_orchestrator.exceptions import OrchestratorError, VendorAPIError
from acme_cert_orchestrator.utils import LoggerMixin

logger = logging.getLogger(__name__)

DEFAULT_NAME_PREFIX = "certimate"


@dataclass(frozen=True)
class VendorCertificateRecord:
    """A certificate as listed by a vendor store."""

    cert_id: str
    cert_name: str = ""
    created_at: datetime | None = None
    # Filled when the listing reports identity fields.
    metadata: matcher.CertificateMetadata | None = None
    # Filled when the listing (or a detail call) returns the certificate itself.
    certificate_pem: str = ""


class UploadState(str, Enum):
    SEARCHING = "searching"
    FOUND = "found"
    CREATING = "creating"
    CREATED = "created"


@dataclass(frozen=True)
class UploadResult:
    """Outcome of an upload: the vendor certificate to use for deployment."""

    cert_id: str
    cert_name: str
    state: UploadState

    @property
    def created(self) -> bool:
        return self.state is UploadState.CREATED


class CertificateStore(ABC):
    """A vendor certificate store bound to one credential set."""

    provider_name: str = "store"
    page_size: int = 1000

    @abstractmethod
    def list_certificates(self, page: int, page_size: int) -> tuple[list[VendorCertificateRecord], bool]:
        """
        Return one page of the inventory (pages start at 1) and whether more pages follow.
        """

    @abstractmethod
    def get_certificate_detail(self, cert_id: str) -> VendorCertificateRecord:
        """Return a record including its certificate content."""

    @abstractmethod
    def create_certificate(
        self,
        name: str,
        certificate_pem: str,
        private_key_pem: str,
        idempotency_token: str,
    ) -> str:
        """Create a certificate and return its vendor id."""

    def format_certificate_name(self, timestamp_ms: int) -> str:
        """Build a certificate name that satisfies the vendor's naming rules."""
        return f"{DEFAULT_NAME_PREFIX}-{timestamp_ms}"


_name_lock = threading.Lock()
_last_timestamp_ms = 0


def _unique_timestamp_ms() -> int:
    """Milliseconds since the epoch, strictly increasing within the process."""
    global _last_timestamp_ms

    with _name_lock:
        now = int(time.time() * 1000)
        if now <= _last_timestamp_ms:
            now = _last_timestamp_ms + 1
        _last_timestamp_ms = now
        return now


def new_idempotency_token() -> str:
    return str(uuid.uuid4())


class CertificateUploader(LoggerMixin):
    """
    Runs the list -> match -> create protocol against one CertificateStore.

    Args:
        store: The vendor store.
        logger: Logger to use (optional).
    """

    def __init__(self, store: CertificateStore, logger: logging.Logger | None = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.state = UploadState.SEARCHING

    def upload(
        self,
        ctx: Context,
        certificate_pem: str,
        private_key_pem: str,
        idempotency_token: str | None = None,
    ) -> UploadResult:
        """
        Upload a certificate unless the store already holds an identical one.

        Args:
            ctx: Cancellation context, checked before every remote call.
            certificate_pem: Certificate chain in PEM format.
            private_key_pem: Private key in PEM format.
            idempotency_token: Token for the create call. Pass the token from a
                previous failed attempt to retry the same logical create.

        Returns:
            UploadResult: The matched or created vendor certificate.

        Raises:
            VendorAPIError: If any listing, detail or create call fails.
            CancellationError: If the context is done.
            ValueError: If the local certificate cannot be parsed.
        """
        local = matcher.CertificateMetadata.from_pem(certificate_pem)
        operation_prefix = self.store.provider_name

        self.state = UploadState.SEARCHING
        existing = self._search(ctx, operation_prefix, local, certificate_pem)
        if existing is not None:
            self.state = UploadState.FOUND
            self.logger.info(
                f"ssl certificate already exists in {operation_prefix}: "
                f"id={existing.cert_id}, name={existing.cert_name}"
            )
            return UploadResult(existing.cert_id, existing.cert_name, UploadState.FOUND)

        self.state = UploadState.CREATING
        ctx.raise_if_done()

        cert_name = self.store.format_certificate_name(_unique_timestamp_ms())
        token = idempotency_token or new_idempotency_token()
        self.logger.debug(f"Creating certificate '{cert_name}' in {operation_prefix} (token={token})")

        try:
            cert_id = self.store.create_certificate(cert_name, certificate_pem, private_key_pem, token)
        except OrchestratorError:
            raise
        except Exception as e:
            raise VendorAPIError(f"{operation_prefix}.create_certificate", e, idempotency_token=token) from e

        self.state = UploadState.CREATED
        self.logger.info(f"ssl certificate uploaded to {operation_prefix}: id={cert_id}, name={cert_name}")
        return UploadResult(str(cert_id), cert_name, UploadState.CREATED)

    def _search(
        self,
        ctx: Context,
        operation_prefix: str,
        local: matcher.CertificateMetadata,
        certificate_pem: str,
    ) -> VendorCertificateRecord | None:
        page = 1
        while True:
            ctx.raise_if_done()

            try:
                records, has_more = self.store.list_certificates(page, self.store.page_size)
            except OrchestratorError:
                raise
            except Exception as e:
                raise VendorAPIError(f"{operation_prefix}.list_certificates", e) from e

            self.logger.debug(f"Listed {len(records)} certificate(s) on page {page} of {operation_prefix}")

            for record in records:
                match = self._match(ctx, operation_prefix, local, certificate_pem, record)
                if match is not None:
                    return match

            if not has_more or not records:
                return None
            page += 1

    def _match(
        self,
        ctx: Context,
        operation_prefix: str,
        local: matcher.CertificateMetadata,
        certificate_pem: str,
        record: VendorCertificateRecord,
    ) -> VendorCertificateRecord | None:
        if record.metadata is not None and not matcher.looks_like_same_metadata(local, record.metadata):
            return None

        if record.certificate_pem:
            return record if matcher.equal_pem(certificate_pem, record.certificate_pem) else None

        ctx.raise_if_done()
        try:
            detail = self.store.get_certificate_detail(record.cert_id)
        except OrchestratorError:
            raise
        except Exception as e:
            raise VendorAPIError(f"{operation_prefix}.get_certificate_detail", e) from e

        if not detail.certificate_pem:
            self.logger.debug(f"Certificate {record.cert_id} has no content in {operation_prefix}; skipping")
            return None

        if not matcher.equal_pem(certificate_pem, detail.certificate_pem):
            return None

        return VendorCertificateRecord(
            cert_id=detail.cert_id or record.cert_id,
            cert_name=detail.cert_name or record.cert_name,
            created_at=detail.created_at or record.created_at,
            metadata=detail.metadata or record.metadata,
            certificate_pem=detail.certificate_pem,
        )
