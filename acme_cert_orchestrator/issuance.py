"""
ACME issuance and revocation under caller-driven cancellation.

The ACME collaborator (AcmeClient) is synchronous and has no notion of
cancellation, so every call runs through run_cancellable(). When the caller
gives up, the collaborator keeps running in the background: the CA may still
issue (or revoke) a certificate the caller never sees.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from acme_cert_orchestrator.acme import AcmeClient
from acme_cert_orchestrator.cancellable import Context, run_cancellable
from acme_cert_orchestrator.certificate import CertificateMaterial, KeyType
from acme_cert_orchestrator.challenge import SolverOptions
from acme_cert_orchestrator.exceptions import (
    AlreadyReplacedError,
    AriConflictError,
    CancellationError,
    ConfigError,
    VendorAPIError,
)
from acme_cert_orchestrator.registry import CapabilityRegistry, default_registry
from acme_cert_orchestrator.utils import LoggerMixin


class ChallengeType(str, Enum):
    DNS01 = "dns-01"
    HTTP01 = "http-01"


@dataclass(frozen=True)
class ObtainCertificateRequest:
    """
    Parameters of one issuance.

    Configuration mappings are copied and stored read-only.
    """

    domains: tuple[str, ...]
    provider: str
    challenge_type: ChallengeType = ChallengeType.DNS01
    provider_access_config: Mapping[str, Any] = field(default_factory=dict)
    provider_extended_config: Mapping[str, Any] = field(default_factory=dict)
    key_type: KeyType = KeyType.RSA2048
    validity_to: datetime | None = None
    disable_follow_cname: bool = False
    nameservers: tuple[str, ...] = ()
    dns_propagation_wait: float = 0
    dns_propagation_timeout: float = 0
    dns_ttl: int = 0
    http_delay_wait: float = 0
    acme_profile: str = ""
    ari_replaces_acct_url: str = ""
    ari_replaces_cert_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "domains", tuple(self.domains))
        object.__setattr__(self, "nameservers", tuple(self.nameservers))
        object.__setattr__(self, "provider_access_config", MappingProxyType(dict(self.provider_access_config)))
        object.__setattr__(self, "provider_extended_config", MappingProxyType(dict(self.provider_extended_config)))


@dataclass(frozen=True)
class ObtainCertificateResponse:
    material: CertificateMaterial
    csr_pem: str
    acme_acct_url: str
    acme_cert_url: str = ""
    acme_cert_stable_url: str = ""
    # True when the CA accepted the order as an ARI replacement.
    ari_replaced: bool = False


@dataclass(frozen=True)
class RevokeCertificateRequest:
    certificate_pem: str
    reason: int | None = None


class ACMEIssuanceDriver(LoggerMixin):
    """
    Obtains and revokes certificates through an ACME collaborator.

    Args:
        acme_client: The ACME collaborator. Not safe for concurrent use; give
            each run its own client.
        registry: Capability registry used to build challenge solvers.
        logger: Logger to use (optional).
    """

    def __init__(
        self,
        acme_client: AcmeClient,
        registry: CapabilityRegistry | None = None,
        logger: logging.Logger | None = None,
    ):
        self.acme_client = acme_client
        self.registry = registry or default_registry()
        self.logger = logger or logging.getLogger(__name__)

    def obtain_certificate(self, ctx: Context, request: ObtainCertificateRequest) -> ObtainCertificateResponse:
        """
        Obtain a certificate.

        If the request names a certificate to replace (ARI) and the CA reports
        it as already replaced, the order is retried once without it.

        Raises:
            ConfigError: If the request or the solver configuration is invalid.
            AriConflictError: If the CA still reports an ARI conflict on the retry.
            VendorAPIError: If the CA or the solver fails.
            CancellationError: If the context is done first.
        """
        if not request.domains:
            raise ConfigError("At least one domain is required")
        try:
            challenge_type = ChallengeType(request.challenge_type)
        except ValueError:
            raise ConfigError(f"Unsupported challenge type: '{request.challenge_type}'") from None

        extended = dict(request.provider_extended_config)
        if request.dns_ttl:
            extended["ttl"] = request.dns_ttl
        solver = self.registry.create(challenge_type.value, request.provider, request.provider_access_config, extended)

        options = SolverOptions(
            propagation_wait=request.dns_propagation_wait,
            propagation_timeout=request.dns_propagation_timeout,
            nameservers=request.nameservers,
            delay=request.http_delay_wait,
            disable_follow_cname=request.disable_follow_cname,
        )
        self.acme_client.set_challenge_solver(challenge_type.value, solver, options)

        if not self.acme_client.account_url:
            self._call(ctx, "acme.register", self.acme_client.register)
        account_url = self.acme_client.account_url

        replaces = ""
        if request.ari_replaces_cert_id:
            if request.ari_replaces_acct_url and request.ari_replaces_acct_url == account_url:
                replaces = request.ari_replaces_cert_id
            else:
                self.logger.warning("ARI replacement skipped: the certificate was issued to a different ACME account")

        self.logger.info(f"Obtaining certificate for {', '.join(request.domains)} via {challenge_type.value}/{request.provider}")

        try:
            result = self._obtain(ctx, request, replaces)
        except AlreadyReplacedError as e:
            if not replaces:
                raise VendorAPIError("acme.obtain", e) from e

            self.logger.warning(f"Certificate {replaces} was already replaced, retrying without ARI: {e.detail}")
            replaces = ""
            try:
                result = self._obtain(ctx, request, replaces)
            except AlreadyReplacedError as e2:
                raise AriConflictError(f"ARI conflict persisted after retry: {e2.detail}") from e2

        try:
            material = CertificateMaterial.from_pem(result.certificate_pem, result.private_key_pem, result.issuer_pem)
        except ValueError as e:
            raise VendorAPIError("acme.obtain", e) from e

        self.logger.info(f"Obtained certificate {material.serial_number_hex} for {list(material.subject_alt_names)}")
        return ObtainCertificateResponse(
            material=material,
            csr_pem=result.csr_pem,
            acme_acct_url=account_url,
            acme_cert_url=result.cert_url,
            acme_cert_stable_url=result.cert_stable_url,
            ari_replaced=bool(replaces),
        )

    def revoke_certificate(self, ctx: Context, request: RevokeCertificateRequest) -> None:
        """
        Revoke a certificate. Never retried.

        Raises:
            VendorAPIError: If the CA rejects the revocation.
            CancellationError: If the context is done first.
        """
        if not request.certificate_pem:
            raise ConfigError("A certificate is required")

        self._call(ctx, "acme.revoke", self.acme_client.revoke, request.certificate_pem, request.reason)
        self.logger.info("Certificate revoked")

    def _obtain(self, ctx: Context, request: ObtainCertificateRequest, replaces: str):
        return self._call(
            ctx,
            "acme.obtain",
            self.acme_client.obtain,
            list(request.domains),
            True,
            request.acme_profile,
            request.validity_to,
            replaces,
            request.key_type,
        )

    def _call(self, ctx: Context, operation: str, fn, *args):
        try:
            return run_cancellable(ctx, fn, *args)
        except (CancellationError, AlreadyReplacedError):
            raise
        except Exception as e:
            raise VendorAPIError(operation, e) from e
