"""
Core library interface: one orchestration run per certificate.

A run obtains a certificate from the CA, uploads it to every configured
vendor certificate store (reusing an identical certificate already there),
deploys it to the configured targets and optionally sends a notification.

Example usage:
    ```python
    from acme_cert_orchestrator import CertificateOrchestrator, DeploymentPlan
    from acme_cert_orchestrator.issuance import ObtainCertificateRequest

    with CertificateOrchestrator(account_key_path=Path("account.pem"), staging=True) as orchestrator:
        result = orchestrator.run(
            None,
            ObtainCertificateRequest(
                domains=("cdn.example.com",),
                provider="rfc2136",
                provider_access_config={"server": "192.0.2.53", "key_name": "acme", "key_secret": "..."},
            ),
            deployments=[
                DeploymentPlan(
                    store_provider="tencentcloud-ssl",
                    store_access_config={"secret_id": "...", "secret_key": "..."},
                    deployer_provider="tencentcloud-cdn",
                    targets=("cdn.example.com",),
                )
            ],
        )
    ```
"""

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from acme_cert_orchestrator import acme, monitoring, notification, validation
from acme_cert_orchestrator.cancellable import Context
from acme_cert_orchestrator.certificate import CertificateMaterial
from acme_cert_orchestrator.deployment import DEFAULT_POLL_INTERVAL, DeploymentJobDriver, JobState, MatchPattern
from acme_cert_orchestrator.exceptions import CancellationError, OrchestratorError, ProtocolError
from acme_cert_orchestrator.issuance import ACMEIssuanceDriver, ObtainCertificateRequest, RevokeCertificateRequest
from acme_cert_orchestrator.registry import CapabilityKind, CapabilityRegistry, default_registry
from acme_cert_orchestrator.store import CertificateUploader, UploadState

logger = logging.getLogger(__name__)

USER_AGENT = "acme-cert-orchestrator"


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class DeploymentPlan:
    """
    Where an issued certificate goes.

    The certificate is uploaded to store_provider; when deployer_provider is
    set it is then deployed to targets. The deployer uses the store's
    credentials unless its own are given.
    """

    store_provider: str
    store_access_config: Mapping[str, Any] = field(default_factory=dict)
    store_extended_config: Mapping[str, Any] = field(default_factory=dict)
    deployer_provider: str = ""
    deployer_access_config: Mapping[str, Any] = field(default_factory=dict)
    deployer_extended_config: Mapping[str, Any] = field(default_factory=dict)
    targets: tuple[str, ...] = ()
    match_pattern: MatchPattern = MatchPattern.EXACT

    def __post_init__(self):
        object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(self, "match_pattern", MatchPattern(self.match_pattern))
        for name in ("store_access_config", "store_extended_config", "deployer_access_config", "deployer_extended_config"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    def __str__(self) -> str:
        return f"{self.store_provider}/{self.deployer_provider}" if self.deployer_provider else self.store_provider


@dataclass(frozen=True)
class NotificationPlan:
    provider: str
    access_config: Mapping[str, Any] = field(default_factory=dict)
    extended_config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "access_config", _frozen(self.access_config))
        object.__setattr__(self, "extended_config", _frozen(self.extended_config))


@dataclass(frozen=True)
class CertificateJob:
    """One unit of work for run_many()."""

    request: ObtainCertificateRequest
    deployments: tuple[DeploymentPlan, ...] = ()
    notification: NotificationPlan | None = None


@dataclass
class DeploymentOutcome:
    """Result of one deployment plan."""

    plan: str
    cert_id: str = ""
    upload_state: UploadState | None = None
    deploy_state: JobState | None = None
    error_message: str = ""

    @property
    def success(self) -> bool:
        return not self.error_message


@dataclass
class CertificateResult:
    """Result of a certificate orchestration run."""

    domains: tuple[str, ...]
    success: bool
    error_message: str = ""
    material: CertificateMaterial | None = None
    acme_cert_url: str = ""
    deployments: list[DeploymentOutcome] = field(default_factory=list)

    def __bool__(self) -> bool:
        """Allow boolean evaluation of result."""
        return self.success

    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else "FAILED"
        return f"<CertificateResult {', '.join(self.domains)}: {status}>"


class CertificateOrchestrator:
    """
    High-level manager for certificate orchestration runs.

    Each run gets its own ACME client, so runs can execute concurrently.

    Attributes:
        account_key: RSA private key of the ACME account.
        staging: If True, use the CA's staging environment.
        registry: Capability registry used to build vendor adapters.
    """

    def __init__(
        self,
        account_key: rsa.RSAPrivateKey | None = None,
        account_key_path: Path | None = None,
        staging: bool = False,
        directory_url: str | None = None,
        email: str = "",
        agree_tos: bool = True,
        registry: CapabilityRegistry | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        user_agent: str = USER_AGENT,
    ):
        """
        Initialize the orchestrator.

        Args:
            account_key: RSA private key for the ACME account (optional).
            account_key_path: Path to a PEM file containing the account key (optional).
            staging: Use the staging environment for testing.
            directory_url: ACME directory of another CA (optional).
            email: Contact address for the ACME account (optional).
            agree_tos: Automatically agree to the CA's terms of service.
            registry: Capability registry (defaults to the built-in providers).
            poll_interval: Seconds between deployment job polls.
            user_agent: User agent string for ACME requests.

        Raises:
            ValueError: If neither account_key nor account_key_path is provided,
                or if the key cannot be loaded.
        """
        if account_key is None and account_key_path is None:
            raise ValueError("Either account_key or account_key_path must be provided")

        if account_key is None and account_key_path:
            account_key = self._load_account_key(account_key_path)

        self.account_key = account_key
        self.staging = staging
        self.directory_url = directory_url
        self.email = email
        self.agree_tos = agree_tos
        self.registry = registry or default_registry()
        self.poll_interval = poll_interval
        self.user_agent = user_agent

        self._lock = threading.Lock()
        self._clients: set[acme.AcmeClient] = set()

    def _load_account_key(self, path: Path) -> rsa.RSAPrivateKey:
        """
        Load RSA private key from PEM file.

        Raises:
            ValueError: If key cannot be loaded or is invalid.
        """
        try:
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        except FileNotFoundError:
            raise ValueError(f"Account key file not found: {path}") from None
        except (TypeError, ValueError) as e:
            raise ValueError(f"Failed to load account key: {e}") from None

        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError(f"Invalid key type: {type(key)}")

        return key

    def new_acme_client(self) -> acme.AcmeClient:
        """Create an ACME client for one run."""
        client = acme.AcmeClient(
            account_key=self.account_key,
            staging=self.staging,
            directory_url=self.directory_url,
            email=self.email,
            agree_tos=self.agree_tos,
        )
        client.add_headers({"User-Agent": self.user_agent})
        with self._lock:
            self._clients.add(client)
        return client

    def _release(self, client: acme.AcmeClient) -> None:
        with self._lock:
            self._clients.discard(client)
        client.close()

    @contextmanager
    def _acme_client(self):
        """
        Yield a fresh ACME client and close it afterwards.

        After a cancellation the abandoned call may still be using the client,
        so it stays open and registered until close().
        """
        client = self.new_acme_client()
        try:
            yield client
        except CancellationError:
            logger.debug(f"Keeping {client!r} open for its abandoned call")
            raise
        except BaseException:
            self._release(client)
            raise
        self._release(client)

    def run(
        self,
        ctx: Context | None,
        request: ObtainCertificateRequest,
        deployments: list[DeploymentPlan] | tuple[DeploymentPlan, ...] = (),
        notification_plan: NotificationPlan | None = None,
    ) -> CertificateResult:
        """
        Obtain a certificate and deploy it.

        Failures are reported in the result; a failed deployment plan does not
        stop the remaining ones.

        Args:
            ctx: Cancellation context (None for no cancellation).
            request: The issuance request.
            deployments: Stores and deployers to push the certificate to.
            notification_plan: Notifier to report the outcome to (optional).

        Returns:
            CertificateResult with success status and details.

        Raises:
            CancellationError: If the context is done. Never reported as a result.
        """
        ctx = ctx or Context()
        domains = tuple(request.domains)
        result = CertificateResult(domains=domains, success=False)

        try:
            logger.info(f"Starting certificate run for: {', '.join(domains)}")
            with self._acme_client() as client:
                driver = ACMEIssuanceDriver(client, self.registry)
                with monitoring.timer(f"Issuance for {domains[0] if domains else '?'}"):
                    response = driver.obtain_certificate(ctx, request)

            self._validate(response.material, domains)
            result.material = response.material
            result.acme_cert_url = response.acme_cert_url

            for plan in deployments:
                result.deployments.append(self._deploy(ctx, response.material, plan))

            failed = [d for d in result.deployments if not d.success]
            if failed:
                result.error_message = "; ".join(f"{d.plan}: {d.error_message}" for d in failed)
            else:
                result.success = True
                logger.info(f"Successfully completed certificate run for: {', '.join(domains)}")

        except CancellationError:
            logger.warning(f"Certificate run for {', '.join(domains)} cancelled")
            raise
        except OrchestratorError as e:
            logger.error(str(e))
            result.error_message = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error in certificate run: {e}")
            result.error_message = f"Unexpected error: {e}"

        if notification_plan is not None:
            self._notify(notification_plan, result)

        return result

    def _validate(self, material: CertificateMaterial, domains: tuple[str, ...]) -> None:
        """
        Check the issued certificate before it is pushed anywhere.

        Raises:
            ProtocolError: If the certificate or key is unusable.
        """
        checks = [
            validation.validate_certificate(material.full_chain_pem),
            validation.validate_private_key(material.private_key_pem),
        ]
        for domain in domains:
            is_valid, error_msg, _ = validation.validate_certificate_chain(material.full_chain_pem, domain)
            checks.append((is_valid, error_msg))

        for is_valid, error_msg in checks:
            if not is_valid:
                raise ProtocolError(f"Issued certificate failed validation: {error_msg}")

        logger.debug(f"Certificate {material.serial_number_hex} validated for {list(domains)}")

    def _deploy(self, ctx: Context, material: CertificateMaterial, plan: DeploymentPlan) -> DeploymentOutcome:
        outcome = DeploymentOutcome(plan=str(plan))
        try:
            store = self.registry.create(
                CapabilityKind.CERTIFICATE_STORE, plan.store_provider, plan.store_access_config, plan.store_extended_config
            )
            with monitoring.timer(f"Upload to {plan.store_provider}"):
                upload = CertificateUploader(store).upload(ctx, material.full_chain_pem, material.private_key_pem)
            outcome.cert_id = upload.cert_id
            outcome.upload_state = upload.state

            if plan.deployer_provider:
                deployer = self.registry.create(
                    CapabilityKind.DEPLOYER,
                    plan.deployer_provider,
                    plan.deployer_access_config or plan.store_access_config,
                    plan.deployer_extended_config,
                )
                job_driver = DeploymentJobDriver(deployer, poll_interval=self.poll_interval)
                with monitoring.timer(f"Deployment to {plan.deployer_provider}"):
                    deployed = job_driver.deploy(ctx, upload.cert_id, list(plan.targets), plan.match_pattern)
                outcome.deploy_state = deployed.state

        except CancellationError:
            raise
        except OrchestratorError as e:
            logger.error(f"Deployment {plan} failed: {e}")
            outcome.error_message = str(e)
            state = getattr(e, "state", None)
            if isinstance(state, JobState):
                outcome.deploy_state = state

        return outcome

    def _notify(self, plan: NotificationPlan, result: CertificateResult) -> None:
        status = "issued and deployed" if result.success else "failed"
        subject = f"Certificate {status}: {', '.join(result.domains)}"

        lines = [f"Domains: {', '.join(result.domains)}"]
        if result.material is not None:
            lines.append(f"Serial: {result.material.serial_number_hex}")
            lines.append(f"Expires: {result.material.not_after.isoformat()}")
        for outcome in result.deployments:
            lines.append(f"{outcome.plan}: {'OK' if outcome.success else outcome.error_message}")
        if result.error_message and not result.deployments:
            lines.append(f"Error: {result.error_message}")

        try:
            notifier = self.registry.create(CapabilityKind.NOTIFIER, plan.provider, plan.access_config, plan.extended_config)
            notification.notify(notifier, subject, "\n".join(lines), log=logger)
        except OrchestratorError as e:
            logger.warning(f"Failed to send notification via {plan.provider}: {e}")

    def run_many(
        self,
        jobs: list[CertificateJob],
        parallel: bool = True,
        ctx: Context | None = None,
    ) -> list[CertificateResult]:
        """
        Run several certificate jobs.

        Args:
            jobs: The jobs to run.
            parallel: If True, run jobs concurrently (default: True).
            ctx: Cancellation context shared by all jobs (optional).

        Returns:
            List of CertificateResult objects, in job order.
        """
        if not jobs:
            return []

        ctx = ctx or Context()

        if not parallel or len(jobs) == 1:
            logger.info(f"Processing {len(jobs)} job(s) sequentially")
            return [self.run(ctx, job.request, job.deployments, job.notification) for job in jobs]

        logger.info(f"Processing {len(jobs)} job(s) in parallel")

        async def process_async(job: CertificateJob) -> CertificateResult:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.run, ctx, job.request, job.deployments, job.notification)

        async def gather_results() -> list[CertificateResult]:
            return await asyncio.gather(*(process_async(job) for job in jobs))

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(gather_results())

        # Already inside an event loop: run ours on a worker thread.
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, gather_results()).result()

    def revoke(self, certificate_pem: str, reason: int | None = None, ctx: Context | None = None) -> None:
        """
        Revoke a certificate issued to the account.

        Raises:
            VendorAPIError: If the CA rejects the revocation.
            CancellationError: If the context is done first.
        """
        with self._acme_client() as client:
            ACMEIssuanceDriver(client, self.registry).revoke_certificate(
                ctx or Context(), RevokeCertificateRequest(certificate_pem, reason)
            )

    def close(self) -> None:
        """
        Close the ACME clients still registered: those of runs in flight and
        those left to calls abandoned after a cancellation.
        """
        with self._lock:
            clients, self._clients = self._clients, set()
        for client in clients:
            client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        mode = "STAGING" if self.staging else "PRODUCTION"
        return f"<CertificateOrchestrator mode={mode}>"
