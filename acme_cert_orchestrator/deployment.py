"""
Submit-and-poll driver for asynchronous vendor deployment jobs.

A deployment binds an uploaded certificate to delivery targets (CDN domains,
load-balancer listeners, ...). Vendors accept the request as a job and report
progress as running/succeeded/failed/total counts; the driver polls the job
until every target has either succeeded or failed.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from acme_cert_orchestrator.cancellable import Context
from acme_cert_orchestrator.exceptions import (
    CancellationError,
    DeploymentJobError,
    OrchestratorError,
    UnexpectedJobStatus,
    VendorAPIError,
)
from acme_cert_orchestrator.utils import LoggerMixin

DEFAULT_POLL_INTERVAL = 5.0


class JobState(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class MatchPattern(str, Enum):
    """How the requested targets are turned into vendor target ids."""

    # Targets are used as given; '*.' entries are expanded like WILDCARD.
    EXACT = "exact"
    # Every target is a wildcard pattern matched against the eligible targets.
    WILDCARD = "wildcard"
    # Every target eligible for the certificate is deployed.
    CERTSAN = "certsan"


@dataclass(frozen=True)
class JobCounts:
    """Progress counters reported by the vendor. total is None when the vendor omitted it."""

    running: int = 0
    succeeded: int = 0
    failed: int = 0
    total: int | None = 0

    @property
    def finished(self) -> int:
        return self.succeeded + self.failed

    def __str__(self) -> str:
        return f"running={self.running} succeeded={self.succeeded} failed={self.failed} total={self.total}"


@dataclass(frozen=True)
class DeploymentJob:
    job_id: str
    submitted_at: datetime
    counts: JobCounts = field(default_factory=JobCounts)

    @property
    def terminal(self) -> bool:
        total = self.counts.total
        return bool(total) and self.counts.finished == total


@dataclass(frozen=True)
class DeployResult:
    state: JobState
    job: DeploymentJob | None = None
    submitted_targets: tuple[str, ...] = ()
    skipped_targets: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.state is JobState.SUCCEEDED


class Deployer(ABC):
    """A vendor delivery service bound to one credential set."""

    provider_name: str = "deployer"

    @abstractmethod
    def resolve_targets(self, cert_id: str) -> list[str]:
        """Return every target id the certificate can be deployed to."""

    @abstractmethod
    def list_deployed_targets(self, cert_id: str) -> list[str]:
        """Return the target ids the certificate is already deployed to."""

    @abstractmethod
    def submit(self, cert_id: str, target_ids: list[str]) -> str:
        """Start a deployment job and return its id."""

    @abstractmethod
    def poll_status(self, job_id: str) -> JobCounts:
        """Return the current progress of a job."""


def match_wildcard(pattern: str, name: str) -> bool:
    """
    Match a target name against a domain pattern.

    A leading '*.' matches exactly one label, so '*.example.com' matches
    'www.example.com' but neither 'example.com' nor 'a.b.example.com'.
    Names without a wildcard must be equal (case-insensitive).
    """
    pattern = pattern.lower()
    name = name.lower()

    if not pattern.startswith("*."):
        return pattern == name

    suffix = pattern[1:]
    if not name.endswith(suffix):
        return False
    label = name[: -len(suffix)]
    return bool(label) and "." not in label


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class DeploymentJobDriver(LoggerMixin):
    """
    Drives one deployment through NOT_SUBMITTED -> SUBMITTED -> POLLING -> terminal.

    Args:
        deployer: The vendor deployer.
        poll_interval: Seconds between status polls.
        logger: Logger to use (optional).
    """

    def __init__(
        self,
        deployer: Deployer,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        logger: logging.Logger | None = None,
    ):
        self.deployer = deployer
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.state = JobState.NOT_SUBMITTED

    def deploy(
        self,
        ctx: Context,
        cert_id: str,
        targets: list[str] | None = None,
        match_pattern: MatchPattern | str = MatchPattern.EXACT,
    ) -> DeployResult:
        """
        Deploy a vendor certificate to the given targets and wait for the job to finish.

        Args:
            ctx: Cancellation context, checked before every remote call and while waiting.
            cert_id: Vendor certificate id.
            targets: Requested targets, interpreted according to match_pattern.
            match_pattern: How targets are resolved.

        Returns:
            DeployResult: State SUCCEEDED with the finished job (None when nothing
            needed deploying).

        Raises:
            DeploymentJobError: If the job finished with failed targets.
            UnexpectedJobStatus: If the vendor reports counts that cannot be interpreted.
            VendorAPIError: If a vendor call fails.
            CancellationError: If the context is done. The remote job keeps running.
        """
        match_pattern = MatchPattern(match_pattern)
        provider = self.deployer.provider_name
        self.state = JobState.NOT_SUBMITTED

        resolved = self._resolve_targets(ctx, cert_id, list(targets or []), match_pattern)

        ctx.raise_if_done()
        deployed = set(self._call("list_deployed_targets", self.deployer.list_deployed_targets, cert_id))
        pending = [t for t in resolved if t not in deployed]
        skipped = tuple(t for t in resolved if t in deployed)

        if skipped:
            self.logger.info(f"Skipping {len(skipped)} target(s) already deployed in {provider}: {list(skipped)}")

        if not pending:
            self.logger.info(f"No targets to deploy certificate {cert_id} to in {provider}")
            self.state = JobState.SUCCEEDED
            return DeployResult(JobState.SUCCEEDED, None, (), skipped)

        ctx.raise_if_done()
        job_id = str(self._call("submit", self.deployer.submit, cert_id, pending))
        job = DeploymentJob(job_id=job_id, submitted_at=datetime.now(timezone.utc))
        self.state = JobState.SUBMITTED
        self.logger.info(f"Deployment job {job_id} submitted to {provider} for {len(pending)} target(s)")

        job = self._wait(ctx, job)

        if job.counts.failed == 0:
            self.state = JobState.SUCCEEDED
            self.logger.info(f"Deployment job {job_id} succeeded: {job.counts}")
            return DeployResult(JobState.SUCCEEDED, job, tuple(pending), skipped)

        self.state = JobState.PARTIALLY_FAILED if job.counts.succeeded > 0 else JobState.FAILED
        self.logger.error(f"Deployment job {job_id} ended {self.state.value}: {job.counts}")
        raise DeploymentJobError(job_id, job.counts, self.state)

    def _resolve_targets(
        self,
        ctx: Context,
        cert_id: str,
        targets: list[str],
        match_pattern: MatchPattern,
    ) -> list[str]:
        if match_pattern is MatchPattern.EXACT and not any(t.startswith("*.") for t in targets):
            return _dedupe(targets)

        ctx.raise_if_done()
        eligible = self._call("resolve_targets", self.deployer.resolve_targets, cert_id)

        if match_pattern is MatchPattern.CERTSAN:
            return _dedupe(list(eligible))

        resolved: list[str] = []
        for target in targets:
            if match_pattern is MatchPattern.EXACT and not target.startswith("*."):
                resolved.append(target)
                continue

            matches = [name for name in eligible if match_wildcard(target, name)]
            if not matches:
                self.logger.warning(f"No target in {self.deployer.provider_name} matches '{target}'")
            resolved.extend(matches)

        return _dedupe(resolved)

    def _wait(self, ctx: Context, job: DeploymentJob) -> DeploymentJob:
        self.state = JobState.POLLING
        attempt = 0
        last: JobCounts | None = None

        try:
            while True:
                ctx.raise_if_done()
                attempt += 1

                counts = self._poll(job.job_id, last)
                last = counts
                job = replace(job, counts=counts)

                if counts.total is None or counts.finished > counts.total:
                    raise UnexpectedJobStatus(job.job_id, counts)

                if job.terminal:
                    return job

                self.logger.info(f"Waiting for deployment job {job.job_id} completion (attempt {attempt}): {counts}")
                ctx.sleep(self.poll_interval)
        except CancellationError as e:
            if last is None:
                raise
            self.logger.warning(f"Stopped waiting for deployment job {job.job_id}, last status: {last}")
            raise type(e)(f"{e} while polling deployment job {job.job_id} (last status: {last})") from e

    def _poll(self, job_id: str, last: JobCounts | None) -> JobCounts:
        try:
            return self.deployer.poll_status(job_id)
        except OrchestratorError:
            raise
        except Exception as e:
            raise VendorAPIError(f"{self.deployer.provider_name}.poll_status", e, counts=last) from e

    def _call(self, operation: str, fn, *args):
        try:
            return fn(*args)
        except OrchestratorError:
            raise
        except Exception as e:
            raise VendorAPIError(f"{self.deployer.provider_name}.{operation}", e) from e
