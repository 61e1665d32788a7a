import base64
import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from acme_cert_orchestrator import acme, utils
from acme_cert_orchestrator.exceptions import AcmeProblemError, AlreadyReplacedError

STAGING = acme.AcmeClient.STAGING_DIRECTORY_URL
ACCOUNT_URL = f"{STAGING}/acct/1"
ORDER_URL = f"{STAGING}/order/1"


def decode(part):
    return json.loads(base64.urlsafe_b64decode(part + "=" * (-len(part) % 4)))


def jws(request):
    body = request.json()
    return decode(body["protected"]), (decode(body["payload"]) if body["payload"] else None)


@pytest.fixture
def registered(acme_client, directory, requests_mock):
    requests_mock.post(directory["newAccount"], status_code=201, headers={"Location": ACCOUNT_URL}, json={})
    acme_client.register()
    return acme_client


def test_acme_client_initialization(acme_client):
    assert acme_client.account_key is not None
    assert acme_client.directory_url == STAGING
    assert acme_client.account_url == ""
    assert "unregistered" in repr(acme_client)


def test_acme_client_directory_override(account_key):
    client = acme.AcmeClient(account_key, staging=True, directory_url="https://ca.example/dir")

    assert client.directory_url == "https://ca.example/dir"
    assert acme.AcmeClient(account_key).directory_url == acme.AcmeClient.DIRECTORY_URL


def test_acme_client_new_account(account_key, directory, requests_mock):
    client = acme.AcmeClient(account_key, staging=True, email="ops@example.com")
    requests_mock.post(directory["newAccount"], status_code=201, headers={"Location": ACCOUNT_URL}, json={})

    account = client.register()

    protected, payload = jws(requests_mock.last_request)
    assert client.account_url == ACCOUNT_URL
    assert account.key == utils.rsa_jwk_public(account_key)
    assert protected["jwk"] == utils.rsa_jwk_public(account_key)
    assert protected["nonce"] == "nonce-0"
    assert protected["url"] == directory["newAccount"]
    assert payload == {"termsOfServiceAgreed": True, "contact": ["mailto:ops@example.com"]}


def test_acme_client_register_without_tos(account_key, directory, requests_mock):
    client = acme.AcmeClient(account_key, staging=True, agree_tos=False)
    requests_mock.post(directory["newAccount"], status_code=200, headers={"Location": ACCOUNT_URL}, json={})

    client.register()

    assert jws(requests_mock.last_request)[1] == {}


def test_acme_client_new_account_rejected(acme_client, directory, requests_mock):
    requests_mock.post(
        directory["newAccount"],
        status_code=400,
        json={"type": "urn:ietf:params:acme:error:malformed", "detail": "bad contact"},
    )

    with pytest.raises(AcmeProblemError, match="bad contact") as exc_info:
        acme_client.register()

    assert exc_info.value.problem_type == "urn:ietf:params:acme:error:malformed"


def test_acme_client_new_order(registered, directory, requests_mock):
    requests_mock.post(
        directory["newOrder"],
        status_code=201,
        headers={"Location": ORDER_URL},
        json={"status": "pending", "authorizations": []},
    )

    order = registered.new_order(
        ["example.com", "www.example.com", "example.com"],
        not_after=datetime(2030, 1, 1, tzinfo=timezone.utc),
        profile="shortlived",
        replaces="aki.serial",
    )

    protected, payload = jws(requests_mock.last_request)
    assert order.url == ORDER_URL
    assert protected["kid"] == ACCOUNT_URL
    assert payload == {
        "identifiers": [{"type": "dns", "value": "example.com"}, {"type": "dns", "value": "www.example.com"}],
        "notAfter": "2030-01-01T00:00:00Z",
        "profile": "shortlived",
        "replaces": "aki.serial",
    }


def test_acme_client_new_order_already_replaced(registered, directory, requests_mock):
    requests_mock.post(
        directory["newOrder"],
        status_code=409,
        json={"type": "urn:ietf:params:acme:error:alreadyReplaced", "detail": "replaced"},
    )

    with pytest.raises(AlreadyReplacedError):
        registered.new_order(["example.com"], replaces="aki.serial")


def test_acme_client_signed_request_bad_nonce(registered, requests_mock):
    signed_url = f"{STAGING}/someResource"
    requests_mock.head(f"{STAGING}/newNonce", headers={"Replay-Nonce": "fresh-nonce"})
    requests_mock.post(
        signed_url,
        [
            {"status_code": 400, "json": {"type": "urn:ietf:params:acme:error:badNonce"}},
            {"status_code": 200, "json": {}, "headers": {"Replay-Nonce": "new-test-nonce"}},
        ],
    )

    response = registered.signed_request(signed_url, payload={"test": "payload"})

    assert response.status_code == 200
    assert jws(requests_mock.last_request)[0]["nonce"] == "fresh-nonce"
    assert registered._nonce == "new-test-nonce"


def test_acme_client_post_as_get(registered, requests_mock):
    requests_mock.post(ORDER_URL, json={"status": "valid"})

    registered.signed_request(ORDER_URL)

    assert requests_mock.last_request.json()["payload"] == ""
    assert requests_mock.last_request.headers["Content-Type"] == "application/jose+json"


def test_acme_client_revoke(registered, directory, requests_mock, issued):
    requests_mock.post(directory["revokeCert"], status_code=200)

    registered.revoke(issued.chain_pem, reason=4)

    _, payload = jws(requests_mock.last_request)
    der = issued.certificate.public_bytes(acme.serialization.Encoding.DER)
    assert payload == {"certificate": utils.b64url(der), "reason": 4}


def test_acme_client_revoke_invalid_certificate(registered):
    with pytest.raises(ValueError):
        registered.revoke("not a certificate")


def test_set_challenge_solver(acme_client):
    with pytest.raises(ValueError, match="tls-alpn-01"):
        acme_client.set_challenge_solver("tls-alpn-01", Mock())


def test_obtain_without_solver(acme_client):
    with pytest.raises(RuntimeError, match="No challenge solver"):
        acme_client.obtain(["example.com"])


def test_obtain(acme_client, directory, requests_mock, issued):
    authz_url = f"{STAGING}/authz/1"
    chall_url = f"{STAGING}/chall/1"
    finalize_url = f"{ORDER_URL}/finalize"
    cert_url = f"{STAGING}/cert/1"
    requests_mock.post(directory["newAccount"], status_code=201, headers={"Location": ACCOUNT_URL}, json={})
    requests_mock.post(
        directory["newOrder"],
        status_code=201,
        headers={"Location": ORDER_URL},
        json={"status": "pending", "authorizations": [authz_url], "finalize": finalize_url},
    )
    requests_mock.post(
        authz_url,
        json={
            "status": "pending",
            "identifier": {"type": "dns", "value": "example.com"},
            "challenges": [{"type": "dns-01", "url": chall_url, "token": "tok"}],
        },
    )
    requests_mock.post(chall_url, json={"type": "dns-01", "status": "valid", "token": "tok"})
    requests_mock.post(ORDER_URL, json={"status": "ready", "finalize": finalize_url})
    requests_mock.post(finalize_url, json={"status": "valid", "certificate": cert_url})
    requests_mock.post(cert_url, text=issued.chain_pem)
    solver = Mock()
    acme_client.set_challenge_solver("dns-01", solver)

    result = acme_client.obtain(["example.com"], replaces_cert_id="aki.serial")

    thumbprint = utils.json_thumbprint(utils.rsa_jwk_public(acme_client.account_key))
    solver.present.assert_called_once_with("example.com", "tok", f"tok.{thumbprint}")
    solver.cleanup.assert_called_once_with("example.com", "tok", f"tok.{thumbprint}")
    assert result.certificate_pem.startswith(issued.leaf_pem.strip())
    assert result.issuer_pem.startswith("-----BEGIN CERTIFICATE-----")
    assert result.cert_url == cert_url
    assert "BEGIN CERTIFICATE REQUEST" in result.csr_pem
    assert "PRIVATE KEY" in result.private_key_pem
    order_request = next(r for r in requests_mock.request_history if r.url == directory["newOrder"])
    assert jws(order_request)[1]["replaces"] == "aki.serial"


def test_obtain_cleans_up_after_failed_challenge(registered, directory, requests_mock):
    authz_url = f"{STAGING}/authz/1"
    chall_url = f"{STAGING}/chall/1"
    requests_mock.post(
        directory["newOrder"],
        status_code=201,
        headers={"Location": ORDER_URL},
        json={"status": "pending", "authorizations": [authz_url]},
    )
    requests_mock.post(
        authz_url,
        json={
            "status": "pending",
            "identifier": {"type": "dns", "value": "example.com"},
            "challenges": [{"type": "dns-01", "url": chall_url, "token": "tok"}],
        },
    )
    requests_mock.post(chall_url, json={"type": "dns-01", "status": "invalid", "token": "tok"})
    solver = Mock()
    registered.set_challenge_solver("dns-01", solver)

    with pytest.raises(RuntimeError, match="Challenge validation failed"):
        registered.obtain(["example.com"])

    solver.cleanup.assert_called_once()
