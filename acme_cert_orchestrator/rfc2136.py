"""
dns-01 solver using RFC 2136 dynamic updates (BIND, Knot, PowerDNS, ...).
"""

import logging
from collections.abc import Callable
from enum import Enum
from ipaddress import ip_address
from typing import Any

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.tsig
import dns.tsigkeyring
import dns.update

from acme_cert_orchestrator import challenge, utils

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = 45
DEFAULT_TTL = 120
PORT = 53

ALGORITHMS = {
    "HMAC-MD5": dns.tsig.HMAC_MD5,
    "HMAC-SHA1": dns.tsig.HMAC_SHA1,
    "HMAC-SHA224": dns.tsig.HMAC_SHA224,
    "HMAC-SHA256": dns.tsig.HMAC_SHA256,
    "HMAC-SHA384": dns.tsig.HMAC_SHA384,
    "HMAC-SHA512": dns.tsig.HMAC_SHA512,
}


class ProtoPref(str, Enum):
    """Transport preference for queries and updates."""

    TCP_ONLY = "tcp_only"
    TCP_FIRST = "tcp_first"
    UDP_ONLY = "udp_only"
    UDP_FIRST = "udp_first"

    def query_functions(self) -> list[Callable[..., dns.message.Message]]:
        return {
            ProtoPref.TCP_ONLY: [dns.query.tcp],
            ProtoPref.TCP_FIRST: [dns.query.tcp, dns.query.udp],
            ProtoPref.UDP_ONLY: [dns.query.udp],
            ProtoPref.UDP_FIRST: [dns.query.udp, dns.query.tcp],
        }[self]


def _is_ip_address(value: str) -> bool:
    try:
        ip_address(value)
    except ValueError:
        return False
    return True


class RFC2136Client:
    """
    Sends TSIG-signed dynamic updates to an authoritative name server.

    Args:
        server: IP address of the authoritative server (queried for SOA).
        key_name: TSIG key name.
        key_secret: TSIG key secret (base64).
        algorithm: TSIG algorithm name, e.g. 'HMAC-SHA256'.
        port: Server port.
        sign_query: Sign SOA queries with the TSIG key as well.
        timeout: Network timeout in seconds.
        update_server: IP address updates are sent to (defaults to server).
    """

    def __init__(
        self,
        server: str,
        key_name: str,
        key_secret: str,
        algorithm: str = "HMAC-MD5",
        port: int = PORT,
        sign_query: bool = False,
        timeout: float = DEFAULT_NETWORK_TIMEOUT,
        update_server: str | None = None,
        server_proto_pref: ProtoPref = ProtoPref.TCP_FIRST,
        update_server_proto_pref: ProtoPref = ProtoPref.TCP_ONLY,
    ):
        if not _is_ip_address(server):
            raise ValueError(f"The configured DNS server ({server}) is not a valid IPv4 or IPv6 address")
        if update_server and not _is_ip_address(update_server):
            raise ValueError(f"The configured update server ({update_server}) is not a valid IPv4 or IPv6 address")

        algorithm = (algorithm or "HMAC-MD5").upper()
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown TSIG algorithm: {algorithm}")

        self.server = server
        self.port = port
        self.keyring = dns.tsigkeyring.from_text({key_name: key_secret})
        self.algorithm = ALGORITHMS[algorithm]
        self.sign_query = sign_query
        self.timeout = timeout
        self.update_server = update_server or server
        self.server_proto_pref = ProtoPref(server_proto_pref)
        self.update_server_proto_pref = ProtoPref(update_server_proto_pref)

    def _send(self, message: dns.message.Message, server: str, proto_pref: ProtoPref) -> dns.message.Message:
        funcs = proto_pref.query_functions()
        for idx, func in enumerate(funcs):
            try:
                return func(message, server, self.timeout, self.port)
            except (OSError, dns.exception.Timeout) as e:
                if idx == len(funcs) - 1:
                    raise
                logger.debug(f"{func.__name__.upper()} query to {server} failed, falling back: {e}")
        raise RuntimeError("no transport configured")

    def _update(self, record_name: str, build: Callable[[dns.update.Update, dns.name.Name], None], verb: str) -> None:
        zone = self.find_zone(record_name)
        rel = dns.name.from_text(record_name).relativize(dns.name.from_text(zone))

        update = dns.update.Update(zone, keyring=self.keyring, keyalgorithm=self.algorithm)
        build(update, rel)

        try:
            response = self._send(update, self.update_server, self.update_server_proto_pref)
        except Exception as e:
            raise RuntimeError(f"Encountered error {verb} TXT record: {e}") from e

        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            raise RuntimeError(f"Received response from server: {dns.rcode.to_text(rcode)}")
        logger.debug(f"Successfully {verb} TXT record {record_name}")

    def add_txt_record(self, record_name: str, record_content: str, record_ttl: int = DEFAULT_TTL) -> None:
        """
        Add a TXT record.

        Raises:
            RuntimeError: If the server rejects the update or cannot be reached.
        """
        self._update(
            record_name,
            lambda update, rel: update.add(rel, record_ttl, dns.rdatatype.TXT, record_content),
            "adding",
        )

    def del_txt_record(self, record_name: str, record_content: str) -> None:
        """
        Delete one TXT record value.

        Raises:
            RuntimeError: If the server rejects the update or cannot be reached.
        """
        self._update(
            record_name,
            lambda update, rel: update.delete(rel, dns.rdatatype.TXT, record_content),
            "deleting",
        )

    def find_zone(self, record_name: str) -> str:
        """
        Find the closest enclosing zone with an authoritative SOA record.

        Raises:
            RuntimeError: If no zone is found.
        """
        guesses = challenge.base_domain_name_guesses(record_name)
        for guess in guesses:
            if self._query_soa(guess):
                return guess

        raise RuntimeError(f"Unable to determine base domain for {record_name} using names: {guesses}")

    def _query_soa(self, domain_name: str) -> bool:
        domain = dns.name.from_text(domain_name)

        request = dns.message.make_query(domain, dns.rdatatype.SOA, dns.rdataclass.IN)
        request.flags ^= dns.flags.RD
        if self.sign_query:
            request.use_tsig(self.keyring, algorithm=self.algorithm)

        try:
            response = self._send(request, self.server, self.server_proto_pref)
        except Exception as e:
            raise RuntimeError(f"Encountered error when making query: {e}") from e

        authoritative = (
            response.rcode() == dns.rcode.NOERROR
            and response.get_rrset(response.answer, domain, dns.rdataclass.IN, dns.rdatatype.SOA)
            and response.flags & dns.flags.AA
        )
        if authoritative:
            logger.debug(f"Received authoritative SOA response for {domain_name}")
            return True

        logger.debug(f"No authoritative SOA record found for {domain_name}")
        return False


class RFC2136Dns01Solver(challenge.Dns01Solver):
    """dns-01 solver publishing records through RFC2136Client."""

    def __init__(self, client: RFC2136Client, ttl: int = DEFAULT_TTL):
        super().__init__()
        self.client = client
        self.ttl = ttl

    def add_txt_record(self, record_name: str, record_content: str) -> None:
        self.client.add_txt_record(record_name, record_content, self.ttl)

    def del_txt_record(self, record_name: str, record_content: str) -> None:
        self.client.del_txt_record(record_name, record_content)


def create_solver(access_config: dict[str, Any], extended_config: dict[str, Any]) -> RFC2136Dns01Solver:
    """
    Build an RFC 2136 solver from provider configuration.

    Access config: server, port, key_name, key_secret, algorithm, sign_query,
    update_server. Extended config: ttl.
    """
    client = RFC2136Client(
        server=utils.get_str(access_config, "server"),
        key_name=utils.get_str(access_config, "key_name"),
        key_secret=utils.get_str(access_config, "key_secret"),
        algorithm=utils.get_str(access_config, "algorithm", "HMAC-MD5"),
        port=utils.get_int(access_config, "port", PORT),
        sign_query=utils.get_bool(access_config, "sign_query"),
        update_server=utils.get_str(access_config, "update_server", "") or None,
    )

    return RFC2136Dns01Solver(client, ttl=utils.get_int(extended_config, "ttl", DEFAULT_TTL))
