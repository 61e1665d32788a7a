"""
Exception taxonomy for the certificate orchestration engine.
"""

from typing import Any


class OrchestratorError(Exception):
    """Base class for all errors raised by the engine."""


class ConfigError(OrchestratorError):
    """Exception raised when credentials or options are missing or malformed."""


class VendorAPIError(OrchestratorError):
    """Exception raised when a remote vendor operation fails."""

    def __init__(
        self,
        operation: str,
        cause: BaseException | str,
        idempotency_token: str | None = None,
        counts: Any = None,
    ):
        self.operation = operation
        self.cause = cause
        # Set when a create failed, so the caller can retry with the same token.
        self.idempotency_token = idempotency_token
        # Last deployment job status observed before the failure, if any.
        self.counts = counts
        message = f"Failed to execute '{operation}': {cause}"
        if counts is not None:
            message += f" (last status: {counts})"
        super().__init__(message)


class DeploymentJobError(VendorAPIError):
    """Exception raised when a deployment job finished with failed targets."""

    def __init__(self, job_id: str, counts: Any, state: Any):
        self.job_id = job_id
        self.state = state
        super().__init__(
            "deployment.job",
            f"job {job_id} ended {state.value}: {counts}",
        )
        self.counts = counts


class ProtocolError(OrchestratorError):
    """Exception raised when a vendor or CA violates its documented contract."""


class UnexpectedJobStatus(ProtocolError):
    """Exception raised when a deployment job reports a status that cannot be interpreted."""

    def __init__(self, job_id: str, counts: Any):
        self.job_id = job_id
        self.counts = counts
        super().__init__(f"Unexpected deployment job status for job {job_id}: {counts}")


class AriConflictError(ProtocolError):
    """Exception raised when the CA reports an ARI conflict after the ARI-less retry."""


class CancellationError(OrchestratorError):
    """Exception raised when the caller cancelled the operation."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class DeadlineExceeded(CancellationError):
    """Exception raised when the caller's deadline elapsed."""

    def __init__(self, message: str = "deadline exceeded"):
        super().__init__(message)


class AcmeProblemError(OrchestratorError):
    """Exception raised for an RFC 8555 problem document returned by the CA."""

    def __init__(self, status_code: int, problem_type: str = "", detail: str = ""):
        self.status_code = status_code
        self.problem_type = problem_type
        self.detail = detail
        super().__init__(f"ACME error {status_code} ({problem_type or 'unknown'}): {detail}")


class AlreadyReplacedError(AcmeProblemError):
    """Exception raised when the certificate named in an ARI 'replaces' field was already replaced."""


class TencentCloudAPIError(Exception):
    """Exception raised when the Tencent Cloud API returns an error response."""

    def __init__(self, code: str, message: str, request_id: str = ""):
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(f"tencentcloud api error: code='{code}', message='{message}', requestId='{request_id}'")


class BucketNotFoundError(Exception):
    """Exception raised when a bucket is not found."""

    def __init__(self, bucket_name):
        self.bucket_name = bucket_name
        super().__init__(f"Bucket '{bucket_name}' not found.")


class BucketAccessError(Exception):
    """Exception raised when an error occurs accessing a bucket."""

    def __init__(self, bucket_name, status_code):
        self.bucket_name = bucket_name
        self.status_code = status_code
        super().__init__(f"Error accessing bucket '{bucket_name}': Status code {status_code}")
