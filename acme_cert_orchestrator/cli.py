#!/usr/bin/env python3
"""
Command-line interface for the certificate orchestrator.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from acme_cert_orchestrator import certificate, utils, validation
from acme_cert_orchestrator.cancellable import Context
from acme_cert_orchestrator.core import (
    CertificateJob,
    CertificateOrchestrator,
    CertificateResult,
    DeploymentPlan,
    NotificationPlan,
)
from acme_cert_orchestrator.exceptions import CancellationError, ConfigError, OrchestratorError
from acme_cert_orchestrator.issuance import ObtainCertificateRequest

logger = logging.getLogger(__name__)

USER_AGENT = "acme-cert-orchestrator-cli"
SECRET_PREFIX = "env:"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parses command-line arguments.

    Returns:
        argparse.Namespace: The parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="acme-cert-orchestrator",
        description="Issue TLS certificates with ACME and deploy them to cloud certificate stores",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Issue and deploy every job of a job file
  %(prog)s -k account.pem --tos run -c jobs.json

  # Against the staging CA, writing PFX archives of the issued certificates
  %(prog)s -k account.pem --staging --tos run -c jobs.json -o out/ --format PFX

  # Revoke a certificate (reason 4: superseded)
  %(prog)s -k account.pem revoke --certificate cert.pem --reason 4

Any string in the job file of the form "env:NAME" is read from the environment
variable NAME, or from secrets/NAME.
""",
    )
    parser.add_argument(
        "-k",
        "--account-key",
        dest="account_key",
        required=True,
        help="Path to the ACME account private key file",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--staging", action="store_true", help="Use the ACME staging environment for testing")
    parser.add_argument("--directory-url", help="ACME directory URL of another CA")
    parser.add_argument("--email", default="", help="Contact email for the ACME account")
    parser.add_argument(
        "-tos",
        "--agree-to-terms-of-service",
        dest="tos",
        action="store_true",
        help="Agree to the ACME terms of service",
    )
    parser.add_argument("--timeout", type=float, help="Give up after this many seconds")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Issue and deploy certificates")
    run.add_argument("-c", "--config", required=True, help="Path to the JSON job file")
    run.add_argument("-o", "--output-dir", help="Write a zip archive of each issued certificate here")
    run.add_argument("--format", default="PEM", choices=["PEM", "PFX"], help="Archive format (default: PEM)")
    run.add_argument(
        "--no-parallel",
        action="store_true",
        help="Process jobs sequentially instead of in parallel",
    )

    revoke = subparsers.add_parser("revoke", help="Revoke a certificate")
    revoke.add_argument("--certificate", required=True, help="Path to the PEM certificate to revoke")
    revoke.add_argument("--reason", type=int, help="RFC 5280 revocation reason code")

    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    """
    Configures the logging settings based on the verbosity level.

    Args:
        verbose: If True, enable DEBUG logging; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )


def resolve_secrets(value: Any) -> Any:
    """
    Replace every "env:NAME" string in a JSON value with the secret NAME.

    Raises:
        ConfigError: If a referenced secret does not exist.
    """
    if isinstance(value, dict):
        return {k: resolve_secrets(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_secrets(v) for v in value]
    if isinstance(value, str) and value.startswith(SECRET_PREFIX):
        name = value[len(SECRET_PREFIX) :]
        try:
            return utils.get_env_secrets(name)
        except OSError as e:
            raise ConfigError(str(e)) from None
    return value


def _section(config: dict[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config field '{key}' must be an object")
    return value


def _replaces(job: dict[str, Any], base: Path) -> str:
    path = utils.get_str(job, "replaces", "")
    if not path:
        return ""
    try:
        return certificate.ari_certificate_id((base / path).read_text())
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot derive ARI id from '{path}': {e}") from None


def create_job(job: dict[str, Any], base: Path = Path.cwd()) -> CertificateJob:
    """
    Build a CertificateJob from one entry of the job file.

    Raises:
        ConfigError: If the entry is incomplete or malformed.
    """
    domains = utils.get_list(job, "domains")
    if not domains:
        raise ConfigError("Job has no domains")

    challenge = _section(job, "challenge")
    validity_days = utils.get_int(job, "validity_days")

    try:
        request = ObtainCertificateRequest(
            domains=tuple(domains),
            provider=utils.get_str(challenge, "provider"),
            challenge_type=utils.get_str(challenge, "type", "dns-01"),
            provider_access_config=_section(challenge, "access"),
            provider_extended_config=_section(challenge, "extended"),
            key_type=certificate.KeyType(utils.get_str(job, "key_type", certificate.KeyType.RSA2048.value)),
            validity_to=(datetime.now(timezone.utc) + timedelta(days=validity_days)) if validity_days else None,
            disable_follow_cname=utils.get_bool(challenge, "disable_follow_cname"),
            nameservers=tuple(utils.get_list(challenge, "nameservers")),
            dns_propagation_wait=utils.get_int(challenge, "dns_propagation_wait"),
            dns_propagation_timeout=utils.get_int(challenge, "dns_propagation_timeout"),
            dns_ttl=utils.get_int(challenge, "dns_ttl"),
            http_delay_wait=utils.get_int(challenge, "http_delay_wait"),
            acme_profile=utils.get_str(job, "acme_profile", ""),
            ari_replaces_acct_url=utils.get_str(job, "replaces_account", ""),
            ari_replaces_cert_id=_replaces(job, base),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid job for {domains[0]}: {e}") from None

    deployments = []
    for entry in job.get("deployments") or []:
        store = _section(entry, "store")
        deployer = _section(entry, "deployer")
        try:
            deployments.append(
                DeploymentPlan(
                    store_provider=utils.get_str(store, "provider"),
                    store_access_config=_section(store, "access"),
                    store_extended_config=_section(store, "extended"),
                    deployer_provider=utils.get_str(deployer, "provider", ""),
                    deployer_access_config=_section(deployer, "access"),
                    deployer_extended_config=_section(deployer, "extended"),
                    targets=tuple(utils.get_list(entry, "targets")),
                    match_pattern=utils.get_str(entry, "match_pattern", "exact"),
                )
            )
        except ValueError as e:
            raise ConfigError(f"Invalid deployment for {domains[0]}: {e}") from None

    notification = None
    if job.get("notification"):
        section = _section(job, "notification")
        notification = NotificationPlan(
            provider=utils.get_str(section, "provider"),
            access_config=_section(section, "access"),
            extended_config=_section(section, "extended"),
        )

    return CertificateJob(request=request, deployments=tuple(deployments), notification=notification)


def load_jobs(path: Path) -> list[CertificateJob]:
    """
    Load the job file.

    Raises:
        ConfigError: If the file cannot be read or is malformed.
    """
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read job file {path}: {e}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from None

    entries = data.get("jobs") if isinstance(data, dict) else data
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"No jobs found in {path}")

    return [create_job(resolve_secrets(entry), base=path.parent) for entry in entries]


def write_archives(results: list[CertificateResult], output_dir: Path, file_format: str = "PEM") -> list[Path]:
    """
    Write a zip archive for every issued certificate.

    Returns:
        list[Path]: The written files.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []

    for result in results:
        if result.material is None:
            continue
        name = result.domains[0].replace("*", "_")
        path = output_dir / f"{name}.zip"
        path.write_bytes(
            certificate.export_archive(result.material.full_chain_pem, result.material.private_key_pem, file_format)
        )
        logger.info(f"Wrote {file_format} archive for {result.domains[0]} to {path}")
        written.append(path)

    return written


def report(results: list[CertificateResult]) -> int:
    """Log a summary of the results and return the exit code."""
    logger.info("=" * 60)
    logger.info("Certificate Run Summary:")

    failed = []
    for result in results:
        domain = ", ".join(result.domains)
        if result.success:
            logger.info(f"  ✓ {domain}: SUCCESS")
        else:
            logger.error(f"  ✗ {domain}: FAILED")
            if result.error_message:
                logger.error(f"    Error: {result.error_message}")
            failed.append(domain)

        for outcome in result.deployments:
            state = outcome.deploy_state.value if outcome.deploy_state else "-"
            logger.info(f"    {outcome.plan}: cert_id={outcome.cert_id or '-'} deploy={state}")

    if failed:
        logger.error("=" * 60)
        logger.error(f"Failed {len(failed)} job(s): {'; '.join(failed)}")
        return 1

    logger.info("=" * 60)
    logger.info(f"All {len(results)} job(s) completed successfully")
    return 0


def _run(args: argparse.Namespace, orchestrator: CertificateOrchestrator, ctx: Context) -> int:
    jobs = load_jobs(Path(args.config))
    logger.info(f"Processing {len(jobs)} job(s)")

    results = orchestrator.run_many(jobs, parallel=not args.no_parallel, ctx=ctx)

    if args.output_dir:
        write_archives(results, Path(args.output_dir), args.format)

    return report(results)


def _revoke(args: argparse.Namespace, orchestrator: CertificateOrchestrator, ctx: Context) -> int:
    path = Path(args.certificate)
    try:
        pem = validation.normalize_certificate(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read certificate {path}: {e}") from None

    is_valid, error_msg = validation.validate_certificate_format(pem)
    if not is_valid:
        raise ConfigError(f"{path}: {error_msg}")

    orchestrator.revoke(pem, reason=args.reason, ctx=ctx)
    logger.info(f"Revoked certificate {path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        int: Exit code (0 for success, 1 for failure, 130 when interrupted).
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    ctx = Context(timeout=args.timeout)
    try:
        account_key_path = Path.cwd() / args.account_key
        if not account_key_path.exists():
            logger.error(f"Account key file not found: {account_key_path}")
            return 1

        if args.staging:
            logger.warning("Using ACME staging environment: certificates will NOT be trusted by browsers")

        with CertificateOrchestrator(
            account_key_path=account_key_path,
            staging=args.staging,
            directory_url=args.directory_url,
            email=args.email,
            agree_tos=args.tos,
            user_agent=USER_AGENT,
        ) as orchestrator:
            if args.command == "revoke":
                return _revoke(args, orchestrator, ctx)
            return _run(args, orchestrator, ctx)

    except CancellationError as e:
        logger.error(f"Operation aborted: {e}")
        return 1
    except (OrchestratorError, ValueError) as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("\nOperation cancelled by user")
        return 130
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        return 1
    finally:
        ctx.cancel()


if __name__ == "__main__":
    sys.exit(main())
