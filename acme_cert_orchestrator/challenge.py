"""
ACME challenge solvers.

A solver publishes the proof for one challenge type and removes it again.
http-01 solvers serve the key authorization under
/.well-known/acme-challenge/<token>; dns-01 solvers publish its digest as a
TXT record at _acme-challenge.<domain>.
"""

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

import dns.exception
import dns.name
import dns.resolver

from acme_cert_orchestrator import utils

logger = logging.getLogger(__name__)

HTTP01 = "http-01"
DNS01 = "dns-01"
SUPPORTED_CHALLENGES = [DNS01, HTTP01]

DEFAULT_PROPAGATION_TIMEOUT = 60.0
PROPAGATION_CHECK_INTERVAL = 2.0
MAX_CNAME_HOPS = 50


@dataclass(frozen=True)
class SolverOptions:
    """
    Timing and resolution knobs applied around a solver.

    Args:
        propagation_wait: Fixed seconds to wait after a dns-01 record is
            published; when set, the propagation check is skipped.
        propagation_timeout: Seconds to wait for the TXT record to become
            visible (0 uses the default).
        nameservers: Resolvers used for CNAME following and propagation checks.
        delay: Seconds to wait after an http-01 proof is published.
        disable_follow_cname: Publish at _acme-challenge.<domain> even if it is a CNAME.
    """

    propagation_wait: float = 0
    propagation_timeout: float = 0
    nameservers: tuple[str, ...] = ()
    delay: float = 0
    disable_follow_cname: bool = False


def key_authorization(token: str, thumbprint: str) -> str:
    return f"{token}.{thumbprint}"


def dns01_txt_value(key_auth: str) -> str:
    """Return the TXT record value for a dns-01 key authorization."""
    return utils.b64url(hashlib.sha256(key_auth.encode("utf-8")).digest())


def challenge_record_name(domain: str) -> str:
    """Return the dns-01 record name for a (possibly wildcard) domain."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"_acme-challenge.{domain.rstrip('.')}"


def get_challenge_object_name(token: str) -> str:
    """
    Get the http-01 path for a challenge token, relative to the web root.
    """
    return f".well-known/acme-challenge/{quote(token)}"


def base_domain_name_guesses(domain: str) -> list[str]:
    """
    Return the parent names of a domain, longest first.

    e.g. '_acme-challenge.www.example.com' ->
    ['_acme-challenge.www.example.com', 'www.example.com', 'example.com', 'com']
    """
    labels = domain.rstrip(".").split(".")
    return [".".join(labels[i:]) for i in range(len(labels))]


def _resolver(nameservers: tuple[str, ...] | list[str] = ()) -> dns.resolver.Resolver:
    if not nameservers:
        return dns.resolver.Resolver()
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = list(nameservers)
    return resolver


def resolve_cname(fqdn: str, nameservers: tuple[str, ...] | list[str] = ()) -> str:
    """
    Follow the CNAME chain of a name and return its final target.

    Names without a CNAME are returned unchanged.
    """
    resolver = _resolver(nameservers)
    name = fqdn.rstrip(".")

    for _ in range(MAX_CNAME_HOPS):
        try:
            answer = resolver.resolve(name, "CNAME")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
            return name
        except dns.exception.Timeout:
            logger.warning(f"Timed out resolving CNAME of {name}; using it as is")
            return name

        target = str(answer[0].target).rstrip(".")
        logger.debug(f"Following CNAME: {name} → {target}")
        name = target

    raise ValueError(f"Too many CNAME hops resolving {fqdn}")


def lookup_txt_records(fqdn: str, nameservers: tuple[str, ...] | list[str] = ()) -> list[str]:
    resolver = _resolver(nameservers)
    try:
        answer = resolver.resolve(fqdn, "TXT")
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers, dns.exception.Timeout):
        return []

    values = []
    for rdata in answer:
        values.append(b"".join(rdata.strings).decode("utf-8"))
    return values


def wait_for_txt_record(
    fqdn: str,
    value: str,
    nameservers: tuple[str, ...] | list[str] = (),
    timeout: float = DEFAULT_PROPAGATION_TIMEOUT,
    interval: float = PROPAGATION_CHECK_INTERVAL,
) -> None:
    """
    Wait until a TXT record with the given value is visible.

    Raises:
        TimeoutError: If the record is not visible within the timeout.
    """
    deadline = time.monotonic() + timeout
    attempt = 0

    while True:
        attempt += 1
        if value in lookup_txt_records(fqdn, nameservers):
            logger.info(f"TXT record {fqdn} propagated after {attempt} check(s)")
            return

        if time.monotonic() + interval > deadline:
            raise TimeoutError(f"TXT record {fqdn} not visible after {timeout}s")

        logger.debug(f"TXT record {fqdn} not visible yet (attempt {attempt})")
        time.sleep(interval)


class ChallengeSolver(ABC):
    """Publishes and removes the proof for one challenge type."""

    challenge_type: str = ""

    def __init__(self):
        self.options = SolverOptions()

    def configure(self, options: SolverOptions) -> None:
        self.options = options

    @abstractmethod
    def present(self, domain: str, token: str, key_auth: str) -> None:
        """Publish the proof for a domain."""

    @abstractmethod
    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        """Remove the proof for a domain."""

    def wait_until_ready(self, domain: str, token: str, key_auth: str) -> None:
        """Block until the published proof can be validated by the CA."""


class Http01Solver(ChallengeSolver):
    challenge_type = HTTP01

    def wait_until_ready(self, domain: str, token: str, key_auth: str) -> None:
        if self.options.delay > 0:
            logger.info(f"Waiting {self.options.delay}s before validating {domain}")
            time.sleep(self.options.delay)


class Dns01Solver(ChallengeSolver):
    """
    Base class for dns-01 solvers.

    Subclasses implement add_txt_record() and del_txt_record(); the record name
    and value are derived here, following a CNAME on _acme-challenge.<domain>
    unless disabled.
    """

    challenge_type = DNS01

    def record_name(self, domain: str) -> str:
        fqdn = challenge_record_name(domain)
        if self.options.disable_follow_cname:
            return fqdn
        return resolve_cname(fqdn, self.options.nameservers)

    def present(self, domain: str, token: str, key_auth: str) -> None:
        fqdn = self.record_name(domain)
        logger.info(f"Publishing dns-01 TXT record {fqdn} for {domain}")
        self.add_txt_record(fqdn, dns01_txt_value(key_auth))

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        fqdn = self.record_name(domain)
        logger.debug(f"Removing dns-01 TXT record {fqdn} for {domain}")
        self.del_txt_record(fqdn, dns01_txt_value(key_auth))

    def wait_until_ready(self, domain: str, token: str, key_auth: str) -> None:
        if self.options.propagation_wait > 0:
            logger.info(f"Waiting {self.options.propagation_wait}s for DNS propagation of {domain}")
            time.sleep(self.options.propagation_wait)
            return

        wait_for_txt_record(
            self.record_name(domain),
            dns01_txt_value(key_auth),
            self.options.nameservers,
            timeout=self.options.propagation_timeout or DEFAULT_PROPAGATION_TIMEOUT,
        )

    @abstractmethod
    def add_txt_record(self, record_name: str, record_content: str) -> None:
        """Create the TXT record."""

    @abstractmethod
    def del_txt_record(self, record_name: str, record_content: str) -> None:
        """Delete the TXT record."""


class WebrootHttp01Solver(Http01Solver):
    """
    Writes http-01 proofs below a directory served by the domain's web server.

    Args:
        webroot: Document root of the web server.
    """

    def __init__(self, webroot: str | Path):
        super().__init__()
        self.webroot = Path(webroot)

    def _path(self, token: str) -> Path:
        return self.webroot / get_challenge_object_name(token)

    def present(self, domain: str, token: str, key_auth: str) -> None:
        path = self._path(token)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(key_auth)
        logger.info(f"Wrote http-01 proof for {domain} to {path}")

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        path = self._path(token)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning(f"http-01 proof for {domain} already removed: {path}")
