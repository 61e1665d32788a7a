from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from acme_cert_orchestrator import acme, models, utils
from acme_cert_orchestrator.deployment import Deployer, JobCounts
from acme_cert_orchestrator.store import CertificateStore, VendorCertificateRecord

STAGING = acme.AcmeClient.STAGING_DIRECTORY_URL


@dataclass
class IssuedCertificate:
    certificate: x509.Certificate
    leaf_pem: str
    chain_pem: str
    key_pem: str


class FakeStore(CertificateStore):
    """In-memory certificate store that lists the certificates created in it."""

    provider_name = "fake-store"

    def __init__(self, records=None, page_size=2, include_content=True):
        self.records: list[VendorCertificateRecord] = list(records or [])
        self.page_size = page_size
        self.include_content = include_content
        self.list_calls: list[int] = []
        self.detail_calls: list[str] = []
        self.create_calls: list[tuple[str, str, str, str]] = []
        self.create_error: Exception | None = None

    def list_certificates(self, page, page_size):
        self.list_calls.append(page)
        start = (page - 1) * page_size
        chunk = self.records[start : start + page_size]
        if not self.include_content:
            chunk = [
                VendorCertificateRecord(r.cert_id, r.cert_name, r.created_at, r.metadata) for r in chunk
            ]
        return chunk, start + page_size < len(self.records)

    def get_certificate_detail(self, cert_id):
        self.detail_calls.append(cert_id)
        for record in self.records:
            if record.cert_id == cert_id:
                return record
        raise KeyError(cert_id)

    def create_certificate(self, name, certificate_pem, private_key_pem, idempotency_token):
        self.create_calls.append((name, certificate_pem, private_key_pem, idempotency_token))
        if self.create_error is not None:
            raise self.create_error

        cert_id = f"cert-{len(self.create_calls)}"
        self.records.append(VendorCertificateRecord(cert_id, name, certificate_pem=certificate_pem))
        return cert_id


class FakeDeployer(Deployer):
    """Deployer replaying a fixed sequence of job statuses; the last one repeats."""

    provider_name = "fake-cdn"

    def __init__(self, statuses=(), eligible=(), deployed=()):
        self.statuses = list(statuses) or [JobCounts(0, 1, 0, 1)]
        self.eligible = list(eligible)
        self.deployed = list(deployed)
        self.resolve_calls = 0
        self.submissions: list[tuple[str, list[str]]] = []
        self.polls = 0

    def resolve_targets(self, cert_id):
        self.resolve_calls += 1
        return list(self.eligible)

    def list_deployed_targets(self, cert_id):
        return list(self.deployed)

    def submit(self, cert_id, target_ids):
        self.submissions.append((cert_id, list(target_ids)))
        return f"job-{len(self.submissions)}"

    def poll_status(self, job_id):
        index = min(self.polls, len(self.statuses) - 1)
        self.polls += 1
        return self.statuses[index]


@pytest.fixture(scope="session")
def account_key():
    """Fixture to generate a private RSA key for the tests."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ca():
    """A self-signed issuing CA: (key, certificate)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test CA"),
            x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA"),
        ]
    )
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def leaf_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def make_certificate(ca, leaf_key):
    """Factory issuing leaf certificates from the test CA."""
    ca_key, ca_cert = ca
    ca_pem = ca_cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = utils.private_key_to_pem(leaf_key)

    def factory(
        domains=("example.com",),
        not_before: datetime | None = None,
        days: int = 90,
        serial: int | None = None,
        common_name: str | None = None,
        with_aki: bool = True,
    ) -> IssuedCertificate:
        not_before = (not_before or datetime.now(timezone.utc) - timedelta(hours=1)).replace(microsecond=0)
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name or domains[0])]))
            .issuer_name(ca_cert.subject)
            .public_key(leaf_key.public_key())
            .serial_number(serial or x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_before + timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        )
        if with_aki:
            builder = builder.add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
            )
        cert = builder.sign(ca_key, hashes.SHA256())
        leaf_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        return IssuedCertificate(cert, leaf_pem, leaf_pem + ca_pem, key_pem)

    return factory


@pytest.fixture
def issued(make_certificate):
    return make_certificate(("example.com", "www.example.com"))


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def make_deployer():
    """Factory for FakeDeployer(statuses, eligible, deployed)."""
    return FakeDeployer


@pytest.fixture
def acme_client(account_key):
    """Fixture to initialize an AcmeClient instance."""
    return acme.AcmeClient(account_key, staging=True)


@pytest.fixture
def directory(requests_mock):
    """Mocks the staging directory and nonce endpoints; returns the directory."""
    urls = {
        "newNonce": f"{STAGING}/newNonce",
        "newAccount": f"{STAGING}/newAccount",
        "newOrder": f"{STAGING}/newOrder",
        "revokeCert": f"{STAGING}/revokeCert",
    }
    requests_mock.get(STAGING, json=urls)
    requests_mock.head(urls["newNonce"], headers={"Replay-Nonce": "nonce-0"})
    return urls


@pytest.fixture
def resource(acme_client):
    data = {"status": "pending"}
    return models.Resource(acme_client, "https://acme-staging-v02.api.letsencrypt.org/acme/resource/1", data)


@pytest.fixture
def account(acme_client):
    """Fixture to initialize an Account instance."""
    data = {"key": {"kty": "RSA", "n": "some-modulus", "e": "AQAB"}, "contact": ["mailto:ops@example.com"]}
    return models.Account(acme_client, "https://acme-staging-v02.api.letsencrypt.org/acme/acct/1", data)


@pytest.fixture
def challenge(acme_client):
    """Fixture to initialize a Challenge instance."""
    data = {"type": "dns-01", "status": "pending", "token": "tok-1"}
    return models.Challenge(acme_client, "https://acme-staging-v02.api.letsencrypt.org/acme/chall/1", data)


@pytest.fixture
def authorization(acme_client):
    """Fixture to initialize an Authorization instance."""
    data = {
        "status": "pending",
        "identifier": {"type": "dns", "value": "example.com"},
        "challenges": [
            {"type": "http-01", "url": "https://acme-staging-v02.api.letsencrypt.org/acme/chall/1", "token": "t1"},
            {"type": "dns-01", "url": "https://acme-staging-v02.api.letsencrypt.org/acme/chall/2", "token": "t2"},
        ],
    }
    return models.Authorization(acme_client, "https://acme-staging-v02.api.letsencrypt.org/acme/authz/1", data)


@pytest.fixture
def order(acme_client):
    """Fixture to initialize an Order instance."""
    data = {
        "authorizations": ["https://acme-staging-v02.api.letsencrypt.org/acme/authz/1"],
        "status": "ready",
        "finalize": "https://acme-staging-v02.api.letsencrypt.org/acme/order/1/finalize",
    }
    return models.Order(acme_client, "https://acme-staging-v02.api.letsencrypt.org/acme/order/1", data)


@pytest.fixture
def requests_mock():
    """Fixture for requests-mock."""
    import requests_mock as rm

    with rm.Mocker() as m:
        yield m
