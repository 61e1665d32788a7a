import logging
import time
from typing import TYPE_CHECKING, Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acme_cert_orchestrator import utils
from acme_cert_orchestrator.exceptions import AcmeProblemError

if TYPE_CHECKING:
    from acme_cert_orchestrator.acme import AcmeClient

logger = logging.getLogger(__name__)


class Resource:
    """Base class representing a generic ACME resource."""

    POLL_INTERVAL = 1
    MAX_RETRIES = 5
    # Seconds one poll loop may take.
    POLL_TIMEOUT = 300

    def __init__(self, client: "AcmeClient", url: str, data: dict[str, Any] | None = None):
        self.client = client
        self.url = url
        self._data: dict[str, Any] | None = data
        self._retry_after = time.monotonic()

    @property
    def status(self) -> str:
        """Get the status of the resource."""
        if not self._data:
            return ""
        return self._data.get("status", "")

    @property
    def error(self) -> dict[str, Any] | None:
        """The problem document attached to an invalid resource, if any."""
        if not self._data:
            return None
        return self._data.get("error")

    def get_json_response(self, r: Any) -> dict[str, Any]:
        """
        Parse the JSON response from the request.

        Raises:
            AcmeProblemError: If the response is not valid JSON.
        """
        try:
            if r.status_code == 204:
                return {}
            return r.json()
        except ValueError:
            raise AcmeProblemError(r.status_code, detail=f"Invalid JSON response: {r.text}") from None

    def update(self) -> None:
        """
        Refresh the resource with POST-as-GET.

        Transient failures are retried with exponential backoff (or the
        server's Retry-After); problem documents from the CA are raised as is.
        """
        last_error: Exception | None = None

        for attempt in range(self.MAX_RETRIES):
            r = None
            try:
                r = self.client.signed_request(self.url, payload=None)
                self.client.raise_for_problem(r, (200, 202))

                self._data = self.get_json_response(r)
                self._retry_after = time.monotonic() + int(r.headers.get("Retry-After", self.POLL_INTERVAL))

                if self._data:
                    return
            except AcmeProblemError as e:
                if e.status_code < 500:
                    raise
                last_error = e
            except Exception as e:
                last_error = e

            logger.warning(f"Error while updating {self.url}: {last_error}")
            wait_time = 2**attempt
            if r is not None:
                wait_time = int(r.headers.get("Retry-After", wait_time))
            time.sleep(wait_time)

        raise AcmeProblemError(0, detail=f"Failed to update {self.url} after {self.MAX_RETRIES} attempts: {last_error}")

    def poll_until_not(self, statuses: set[str], timeout: float | None = None) -> None:
        """
        Poll the resource until its status is not in the specified set.

        Raises:
            TimeoutError: If the status did not change within the timeout.
        """
        deadline = time.monotonic() + (timeout or self.POLL_TIMEOUT)

        while self.status in statuses:
            if time.monotonic() > deadline:
                raise TimeoutError(f"{self} still {self.status} after {timeout or self.POLL_TIMEOUT}s")
            logger.debug(f"Polling {self.url}, current status: {self.status}")
            delay = self._retry_after - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            self.update()

    def __getitem__(self, item: str) -> Any:
        if not self._data:
            self.update()

        if self._data is None:
            raise ValueError("Resource data is None")

        return self._data.get(item)

    def __repr__(self) -> str:
        data = repr(self._data) if self._data else "..."
        return f"<{self.__class__.__name__} {self.url} {data}>"


class Account(Resource):
    """Represents an ACME account resource."""

    @property
    def contact(self) -> list[str]:
        """Return the contact URIs registered with the account."""
        if not self._data:
            return []
        return self._data.get("contact") or []

    @property
    def key(self) -> dict[str, Any]:
        """Return the account JWK."""
        value = self["key"]
        if not value:
            raise KeyError("Account key not found")
        return value

    @property
    def key_thumbprint(self) -> str:
        """Return the JWK thumbprint (for key authorizations)."""
        return utils.json_thumbprint(self.key)


class Challenge(Resource):
    """Class representing an ACME challenge."""

    @property
    def type(self) -> str:
        if not self._data:
            self.update()
        if self._data:
            return self._data.get("type", "")
        return ""

    @property
    def token(self) -> str:
        return self["token"] or ""

    def respond(self) -> None:
        """Tell the CA the challenge is ready for validation."""
        r = self.client.signed_request(self.url, {})
        self.client.raise_for_problem(r, (200,))
        self._data = self.get_json_response(r)


class Authorization(Resource):
    """Class representing an ACME authorization."""

    @property
    def identifier(self) -> dict[str, Any]:
        return self["identifier"]

    @property
    def domain(self) -> str:
        """The authorized name; wildcard authorizations are reported with a leading '*.'."""
        value = self.identifier.get("value", "")
        if self["wildcard"] and not value.startswith("*."):
            return f"*.{value}"
        return value

    @property
    def challenges(self) -> list[Challenge]:
        """Get the list of challenges associated with the authorization."""
        if not self._data:
            self.update()
        if not self._data:
            raise ValueError("Authorization data is None")

        return [Challenge(self.client, challenge["url"], challenge) for challenge in self._data.get("challenges", [])]

    def find_challenge(self, challenge_type: str) -> Challenge:
        """
        Return the challenge of the given type.

        Raises:
            ValueError: If the CA offers no such challenge for this authorization.
        """
        challenges = self.challenges
        for challenge in challenges:
            if challenge.type == challenge_type:
                return challenge

        available = [c.type for c in challenges]
        raise ValueError(f"No {challenge_type} challenge offered for {self.domain}. Available: {available}")


class Order(Resource):
    """Class representing an ACME order."""

    @property
    def authorizations(self) -> list[Authorization]:
        if not self._data:
            raise ValueError("Order data is None")

        return [Authorization(self.client, url) for url in self._data.get("authorizations", [])]

    @property
    def certificate_url(self) -> str:
        """URL of the issued certificate; empty until the order is valid."""
        if not self._data:
            return ""
        return self._data.get("certificate", "")

    def finalize(self, csr: x509.CertificateSigningRequest) -> None:
        """
        Finalize the order with the provided CSR.

        Raises:
            RuntimeError: If the order is not in the "ready" state.
        """
        if self.status != "ready":
            raise RuntimeError(f"Cannot finalize order in state: {self.status}")

        if not self._data:
            raise ValueError("Order data is None")

        csr_b64 = utils.b64url(csr.public_bytes(serialization.Encoding.DER))
        r = self.client.signed_request(self._data.get("finalize", ""), {"csr": csr_b64})
        self.client.raise_for_problem(r, (200,))
        self._data = self.get_json_response(r)
        self._retry_after = time.monotonic() + int(r.headers.get("Retry-After", self.POLL_INTERVAL))

    def certificate(self) -> str:
        """
        Download the issued certificate chain.

        Returns:
            str: Leaf certificate followed by its issuers (PEM).

        Raises:
            RuntimeError: If the order is not in the "valid" state.
        """
        if self.status != "valid":
            raise RuntimeError(f"Cannot download certificate of order in state: {self.status}")

        r = self.client.signed_request(self.certificate_url, headers={"Accept": "application/pem-certificate-chain"})
        self.client.raise_for_problem(r, (200,))
        return r.text
