"""Tests for the ACME issuance driver."""

import threading
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from acme_cert_orchestrator.acme import ObtainResult
from acme_cert_orchestrator.cancellable import Context
from acme_cert_orchestrator.certificate import KeyType
from acme_cert_orchestrator.challenge import SolverOptions
from acme_cert_orchestrator.exceptions import (
    AcmeProblemError,
    AlreadyReplacedError,
    AriConflictError,
    CancellationError,
    ConfigError,
    DeadlineExceeded,
    ProtocolError,
    VendorAPIError,
)
from acme_cert_orchestrator.issuance import (
    ACMEIssuanceDriver,
    ChallengeType,
    ObtainCertificateRequest,
    RevokeCertificateRequest,
)
from acme_cert_orchestrator.registry import CapabilityKind, CapabilityRegistry

ACCOUNT_URL = "https://acme.test/acct/1"
ALREADY_REPLACED = AlreadyReplacedError(409, "urn:ietf:params:acme:error:alreadyReplaced", "replaced by another")


@pytest.fixture
def solver():
    return Mock()


@pytest.fixture
def registry(solver):
    registry = CapabilityRegistry()
    registry.register(CapabilityKind.DNS01, "fake-dns", Mock(return_value=solver))
    registry.register(CapabilityKind.HTTP01, "fake-http", Mock(return_value=solver))
    return registry.freeze()


@pytest.fixture
def obtain_result(issued):
    return ObtainResult(
        csr_pem="-----BEGIN CERTIFICATE REQUEST-----",
        certificate_pem=issued.chain_pem,
        issuer_pem="",
        private_key_pem=issued.key_pem,
        cert_url="https://acme.test/cert/1",
        cert_stable_url="https://acme.test/cert/1",
    )


@pytest.fixture
def client(obtain_result):
    client = Mock()
    client.account_url = ACCOUNT_URL
    client.obtain.return_value = obtain_result
    return client


def make_request(**kwargs):
    fields = {"domains": ("example.com", "www.example.com"), "provider": "fake-dns"}
    fields.update(kwargs)
    return ObtainCertificateRequest(**fields)


class TestObtainCertificateRequest:
    """Tests for ObtainCertificateRequest."""

    def test_config_is_read_only(self):
        """Test configuration mappings are copied and frozen."""
        access = {"token": "secret"}
        request = make_request(domains=["example.com"], provider_access_config=access)
        access["token"] = "changed"

        assert request.provider_access_config["token"] == "secret"
        assert request.domains == ("example.com",)
        with pytest.raises(TypeError):
            request.provider_access_config["token"] = "x"


class TestObtainCertificate:
    """Tests for ACMEIssuanceDriver.obtain_certificate."""

    def test_success(self, client, registry, solver, issued):
        """Test a plain issuance."""
        response = ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request())

        assert response.material.subject_alt_names == ("example.com", "www.example.com")
        assert response.material.issuer_org == "Test CA"
        assert response.acme_acct_url == ACCOUNT_URL
        assert response.acme_cert_url == "https://acme.test/cert/1"
        assert response.csr_pem.startswith("-----BEGIN")
        assert response.ari_replaced is False
        client.obtain.assert_called_once_with(
            ["example.com", "www.example.com"], True, "", None, "", KeyType.RSA2048
        )

    def test_solver_configuration(self, client, registry, solver):
        """Test the solver is built through the registry and configured with the request's options."""
        request = make_request(
            provider_access_config={"server": "192.0.2.1"},
            provider_extended_config={"zone": "example.com"},
            nameservers=["192.0.2.53"],
            dns_propagation_wait=5,
            dns_propagation_timeout=30,
            dns_ttl=60,
            disable_follow_cname=True,
        )

        ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), request)

        factory = registry.lookup(CapabilityKind.DNS01, "fake-dns")
        factory.assert_called_once_with(request.provider_access_config, {"zone": "example.com", "ttl": 60})
        client.set_challenge_solver.assert_called_once_with(
            "dns-01",
            solver,
            SolverOptions(
                propagation_wait=5,
                propagation_timeout=30,
                nameservers=("192.0.2.53",),
                delay=0,
                disable_follow_cname=True,
            ),
        )

    def test_http01(self, client, registry, solver):
        """Test http-01 solvers are looked up under their own kind."""
        request = make_request(provider="fake-http", challenge_type="http-01", http_delay_wait=3)

        ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), request)

        challenge_type, _, options = client.set_challenge_solver.call_args.args
        assert challenge_type == ChallengeType.HTTP01.value
        assert options.delay == 3

    def test_order_options_passed(self, client, registry):
        """Test profile, validity end and key type reach the collaborator."""
        not_after = datetime(2030, 1, 1, tzinfo=timezone.utc)
        request = make_request(acme_profile="shortlived", validity_to=not_after, key_type=KeyType.EC256)

        ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), request)

        client.obtain.assert_called_once_with(
            ["example.com", "www.example.com"], True, "shortlived", not_after, "", KeyType.EC256
        )

    def test_registers_when_needed(self, client, registry):
        """Test an unregistered client registers before ordering."""
        client.account_url = ""

        def register():
            client.account_url = ACCOUNT_URL

        client.register.side_effect = register

        response = ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request())

        client.register.assert_called_once()
        assert response.acme_acct_url == ACCOUNT_URL

    def test_no_domains(self, client, registry):
        """Test a request without domains is a configuration error."""
        with pytest.raises(ConfigError, match="domain"):
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request(domains=()))

        client.obtain.assert_not_called()

    def test_unsupported_challenge_type(self, client, registry):
        """Test unknown challenge types are configuration errors."""
        with pytest.raises(ConfigError, match="tls-alpn-01"):
            ACMEIssuanceDriver(client, registry).obtain_certificate(
                Context(), make_request(challenge_type="tls-alpn-01")
            )

    def test_unknown_provider(self, client, registry):
        """Test unknown solver providers are configuration errors."""
        with pytest.raises(ConfigError, match="nope"):
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request(provider="nope"))

    def test_collaborator_failure_wrapped(self, client, registry):
        """Test CA failures are wrapped with the operation name."""
        client.obtain.side_effect = AcmeProblemError(403, "urn:ietf:params:acme:error:unauthorized", "nope")

        with pytest.raises(VendorAPIError, match="acme.obtain") as exc_info:
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request())

        assert "unauthorized" in str(exc_info.value)
        assert client.obtain.call_count == 1

    def test_unparseable_certificate(self, client, registry, obtain_result):
        """Test an unusable certificate from the CA is a vendor error."""
        client.obtain.return_value = ObtainResult("csr", "garbage", "", "key")

        with pytest.raises(VendorAPIError, match="acme.obtain"):
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request())


class TestAri:
    """Tests for ARI replacement handling."""

    def ari_request(self, account_url=ACCOUNT_URL):
        return make_request(ari_replaces_acct_url=account_url, ari_replaces_cert_id="aki.serial")

    def test_replaces_sent_for_same_account(self, client, registry):
        """Test the replaced certificate id is sent when the account matches."""
        response = ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), self.ari_request())

        assert client.obtain.call_args.args[4] == "aki.serial"
        assert response.ari_replaced is True

    def test_replaces_not_sent_for_other_account(self, client, registry):
        """Test cross-account replacement is never sent."""
        ACMEIssuanceDriver(client, registry).obtain_certificate(
            Context(), self.ari_request("https://acme.test/acct/other")
        )

        assert client.obtain.call_args.args[4] == ""

    def test_replaces_not_sent_without_account(self, client, registry):
        """Test a replacement without an account URL is never sent."""
        client.account_url = ""
        client.register.side_effect = lambda: None

        ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), self.ari_request(""))

        assert client.obtain.call_args.args[4] == ""

    def test_already_replaced_retries_once(self, client, registry, obtain_result):
        """Test an ARI conflict is retried exactly once without the replaced id."""
        client.obtain.side_effect = [ALREADY_REPLACED, obtain_result]

        response = ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), self.ari_request())

        assert client.obtain.call_count == 2
        assert client.obtain.call_args_list[0].args[4] == "aki.serial"
        assert client.obtain.call_args_list[1].args[4] == ""
        assert response.ari_replaced is False

    def test_second_conflict_is_fatal(self, client, registry):
        """Test a second ARI conflict raises AriConflictError."""
        client.obtain.side_effect = [ALREADY_REPLACED, ALREADY_REPLACED]

        with pytest.raises(AriConflictError) as exc_info:
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), self.ari_request())

        assert isinstance(exc_info.value, ProtocolError)
        assert client.obtain.call_count == 2

    def test_conflict_without_replaces_not_retried(self, client, registry):
        """Test a conflict on an order that replaced nothing is not retried."""
        client.obtain.side_effect = ALREADY_REPLACED

        with pytest.raises(VendorAPIError):
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), make_request())

        assert client.obtain.call_count == 1

    def test_retry_failure_wrapped(self, client, registry):
        """Test a non-ARI failure on the retry is a vendor error."""
        client.obtain.side_effect = [ALREADY_REPLACED, ConnectionError("reset")]

        with pytest.raises(VendorAPIError, match="reset"):
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(), self.ari_request())


class TestCancellation:
    """Tests for cancellation of ACME calls."""

    def test_deadline_during_obtain(self, client, registry, obtain_result):
        """Test the caller gets DeadlineExceeded while the CA call keeps running."""
        release = threading.Event()
        finished = threading.Event()

        def slow_obtain(*args):
            release.wait(5)
            finished.set()
            return obtain_result

        client.obtain.side_effect = slow_obtain

        with pytest.raises(DeadlineExceeded):
            ACMEIssuanceDriver(client, registry).obtain_certificate(Context(timeout=0.1), make_request())

        assert not finished.is_set()
        release.set()
        assert finished.wait(2)

    def test_cancelled_before_obtain(self, client, registry):
        """Test a cancelled context never reaches the CA."""
        ctx = Context()
        ctx.cancel()

        with pytest.raises(CancellationError):
            ACMEIssuanceDriver(client, registry).obtain_certificate(ctx, make_request())

        client.obtain.assert_not_called()


class TestRevokeCertificate:
    """Tests for ACMEIssuanceDriver.revoke_certificate."""

    def test_revoke(self, client, registry, issued):
        """Test revocation is a single call."""
        ACMEIssuanceDriver(client, registry).revoke_certificate(
            Context(), RevokeCertificateRequest(issued.leaf_pem, reason=4)
        )

        client.revoke.assert_called_once_with(issued.leaf_pem, 4)

    def test_revoke_failure_not_retried(self, client, registry, issued):
        """Test a failed revocation is wrapped and not retried."""
        client.revoke.side_effect = AcmeProblemError(400, "urn:ietf:params:acme:error:alreadyRevoked", "revoked")

        with pytest.raises(VendorAPIError, match="acme.revoke"):
            ACMEIssuanceDriver(client, registry).revoke_certificate(Context(), RevokeCertificateRequest(issued.leaf_pem))

        assert client.revoke.call_count == 1

    def test_revoke_requires_certificate(self, client, registry):
        """Test an empty certificate is a configuration error."""
        with pytest.raises(ConfigError):
            ACMEIssuanceDriver(client, registry).revoke_certificate(Context(), RevokeCertificateRequest(""))

    def test_revoke_cancelled(self, client, registry, issued):
        """Test a cancelled context never reaches the CA."""
        ctx = Context()
        ctx.cancel()

        with pytest.raises(CancellationError):
            ACMEIssuanceDriver(client, registry).revoke_certificate(ctx, RevokeCertificateRequest(issued.leaf_pem))

        client.revoke.assert_not_called()
