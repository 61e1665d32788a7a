"""
ACME Certificate Orchestrator - issue TLS certificates with ACME, deduplicate them
against cloud certificate stores and deploy them to delivery targets.
"""

from . import (
    acme,
    cancellable,
    certificate,
    challenge,
    deployment,
    exceptions,
    issuance,
    matcher,
    models,
    registry,
    store,
    utils,
    validation,
)

# Import main public API
from .cancellable import Context, run_cancellable
from .core import CertificateJob, CertificateOrchestrator, CertificateResult, DeploymentPlan, NotificationPlan
from .issuance import ACMEIssuanceDriver, ObtainCertificateRequest, RevokeCertificateRequest

__version__ = "0.1.0"

__all__ = [
    # High-level API (recommended for most users)
    "CertificateOrchestrator",
    "CertificateJob",
    "CertificateResult",
    "DeploymentPlan",
    "NotificationPlan",
    # Engine
    "ACMEIssuanceDriver",
    "ObtainCertificateRequest",
    "RevokeCertificateRequest",
    "Context",
    "run_cancellable",
    # Low-level modules (for advanced usage)
    "acme",
    "cancellable",
    "certificate",
    "challenge",
    "deployment",
    "exceptions",
    "issuance",
    "matcher",
    "models",
    "registry",
    "store",
    "utils",
    "validation",
]
