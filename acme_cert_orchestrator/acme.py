import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from acme_cert_orchestrator import certificate, challenge, models, utils, validation
from acme_cert_orchestrator.exceptions import AcmeProblemError, AlreadyReplacedError

logger = logging.getLogger(__name__)

PROBLEM_PREFIX = "urn:ietf:params:acme:error:"
BAD_NONCE = PROBLEM_PREFIX + "badNonce"
ALREADY_REPLACED = PROBLEM_PREFIX + "alreadyReplaced"


@dataclass(frozen=True)
class ObtainResult:
    """Everything the CA returned for one issued certificate."""

    csr_pem: str
    certificate_pem: str
    issuer_pem: str
    private_key_pem: str
    cert_url: str = ""
    cert_stable_url: str = ""


class AcmeClient:
    """Client for interacting with ACME (Automated Certificate Management Environment) server."""

    DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
    STAGING_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

    def __init__(
        self,
        account_key: rsa.RSAPrivateKey,
        staging: bool = False,
        directory_url: str | None = None,
        email: str = "",
        agree_tos: bool = True,
    ):
        """
        Initialize the AcmeClient.

        Args:
            account_key: The RSA private key for the account.
            staging: Use the Let's Encrypt staging directory.
            directory_url: Directory of another CA (overrides staging).
            email: Contact address registered with the account (optional).
            agree_tos: Agree to the CA's terms of service when registering.
        """
        self.http = requests.Session()
        self.account_key = account_key
        self.staging = staging
        self.directory_url = directory_url or (self.STAGING_DIRECTORY_URL if staging else self.DIRECTORY_URL)
        self.email = email
        self.agree_tos = agree_tos

        self._directory: dict[str, Any] | None = None
        self._nonce: str | None = None
        self._key_id: str = ""
        self._account: models.Account | None = None
        self._solvers: dict[str, challenge.ChallengeSolver] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.http.close()

    def close(self):
        """Close the AcmeClient."""
        self.__exit__(None, None, None)

    def __repr__(self) -> str:
        return f"<AcmeClient {self.directory_url} account={self._key_id or 'unregistered'}>"

    def add_headers(self, headers: dict[str, str]) -> None:
        """Add headers to the HTTP session."""
        self.http.headers.update(headers)

    @property
    def account_url(self) -> str:
        """URL of the registered account; empty before register()."""
        return self._key_id

    @property
    def account(self) -> models.Account:
        if self._account is None:
            raise RuntimeError("ACME account is not registered")
        return self._account

    def register(self, agree_tos: bool | None = None) -> models.Account:
        """
        Register the account key with the CA, or look up the existing account.

        Raises:
            AcmeProblemError: If the CA rejects the registration.
        """
        logger.info(f"Registering ACME account with {self.directory_url}")
        account = self.new_account(terms_of_service_agreed=self.agree_tos if agree_tos is None else agree_tos)
        logger.info(f"ACME account: {account.url}")
        return account

    def new_account(
        self,
        terms_of_service_agreed: bool | None = None,
        only_existing: bool | None = None,
    ) -> models.Account:
        """
        Create (or fetch) the ACME account of the account key.

        Args:
            terms_of_service_agreed: Whether the user agrees to the terms of service.
            only_existing: Only look up an existing account.

        Returns:
            models.Account: The ACME account.

        Raises:
            AcmeProblemError: If the CA rejects the request.
        """
        payload: dict[str, Any] = {}

        if terms_of_service_agreed:
            payload["termsOfServiceAgreed"] = terms_of_service_agreed

        if only_existing:
            payload["onlyReturnExisting"] = only_existing

        if self.email and not only_existing:
            payload["contact"] = [f"mailto:{self.email}"]

        public_jwk = utils.rsa_jwk_public(self.account_key)
        r = self._signed_request(
            url=self.url_for("newAccount"),
            key={"alg": "RS256", "jwk": public_jwk},
            payload=payload,
        )
        self.raise_for_problem(r, (200, 201))

        self._key_id = r.headers["Location"]
        data = r.json() if r.content else {}
        # Servers may omit the key; the thumbprint only needs the public JWK.
        data.setdefault("key", public_jwk)
        self._account = models.Account(self, self._key_id, data)
        return self._account

    def new_order(
        self,
        domains: list[str],
        not_after: datetime | None = None,
        profile: str = "",
        replaces: str = "",
    ) -> models.Order:
        """
        Create a new order for the specified domains.

        Args:
            domains: Domain names; duplicates are dropped.
            not_after: Requested end of validity (optional).
            profile: Certificate profile name (optional).
            replaces: ARI certificate id of the certificate this order replaces (optional).

        Returns:
            models.Order: The ACME order.

        Raises:
            AlreadyReplacedError: If the replaced certificate was already replaced.
            AcmeProblemError: If the CA rejects the order.
        """
        all_domains: list[str] = []
        for domain in domains:
            if domain not in all_domains:
                all_domains.append(domain)

        payload: dict[str, Any] = {"identifiers": [{"type": "dns", "value": d} for d in all_domains]}
        if not_after is not None:
            payload["notAfter"] = not_after.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        if profile:
            payload["profile"] = profile
        if replaces:
            payload["replaces"] = replaces

        url = self.url_for("newOrder")
        logger.debug(f"Creating new order with URL {url} and payload: {payload}")

        r = self.signed_request(url, payload)
        self.raise_for_problem(r, (201,))

        return models.Order(self, r.headers["Location"], r.json())

    def set_challenge_solver(
        self,
        challenge_type: str,
        solver: challenge.ChallengeSolver,
        options: challenge.SolverOptions | None = None,
    ) -> None:
        """
        Use a solver for one challenge type.

        Raises:
            ValueError: If the challenge type is not supported.
        """
        if challenge_type not in challenge.SUPPORTED_CHALLENGES:
            raise ValueError(f"Unsupported challenge type: '{challenge_type}'")

        solver.configure(options or challenge.SolverOptions())
        self._solvers[challenge_type] = solver

    def obtain(
        self,
        domains: list[str],
        bundle: bool = True,
        profile: str = "",
        not_after: datetime | None = None,
        replaces_cert_id: str = "",
        key_type: certificate.KeyType | str = certificate.KeyType.RSA2048,
    ) -> ObtainResult:
        """
        Run a complete issuance: order, authorize, finalize, download.

        Args:
            domains: Domain names; the first one becomes the Common Name.
            bundle: Return the leaf followed by its issuers (otherwise the leaf only).
            profile: Certificate profile name (optional).
            not_after: Requested end of validity (optional).
            replaces_cert_id: ARI id of the certificate being renewed (optional).
            key_type: Key algorithm of the certificate key.

        Returns:
            ObtainResult: The certificate, its key and the CSR.

        Raises:
            AlreadyReplacedError: If the ARI 'replaces' certificate was already replaced.
            AcmeProblemError: If the CA rejects a request.
            RuntimeError: If no solver is configured or an authorization fails.
        """
        if not self._solvers:
            raise RuntimeError("No challenge solver configured")

        if not self._key_id:
            self.register()

        private_key = certificate.generate_private_key(key_type)
        csr = certificate.generate_csr(domains, private_key)

        order = self.new_order(domains, not_after=not_after, profile=profile, replaces=replaces_cert_id)
        logger.info(f"Created order {order.url} for {', '.join(domains)}")

        for authorization in order.authorizations:
            self._authorize(authorization)

        order.update()
        order.poll_until_not({"pending"})
        order.finalize(csr)
        order.poll_until_not({"processing"})

        if order.status != "valid":
            raise RuntimeError(f"Order {order.url} ended {order.status}: {order.error}")

        chain = order.certificate()
        leaf, issuer = validation.split_certificate_chain(chain)
        if not leaf:
            raise AcmeProblemError(200, detail="CA returned no certificate")

        logger.info(f"Certificate issued for {', '.join(domains)}")
        return ObtainResult(
            csr_pem=csr.public_bytes(serialization.Encoding.PEM).decode("ascii"),
            certificate_pem=validation.normalize_certificate(chain if bundle else leaf),
            issuer_pem=issuer,
            private_key_pem=utils.private_key_to_pem(private_key),
            cert_url=order.certificate_url,
            cert_stable_url=order.certificate_url,
        )

    def _authorize(self, authorization: models.Authorization) -> None:
        authorization.update()
        domain = authorization.domain

        if authorization.status == "valid":
            logger.debug(f"Authorization for {domain} already valid")
            return

        offered = {c.type for c in authorization.challenges}
        challenge_type = next((t for t in challenge.SUPPORTED_CHALLENGES if t in self._solvers and t in offered), None)
        if challenge_type is None:
            raise RuntimeError(
                f"No configured solver for {domain}. Offered: {sorted(offered)}, configured: {sorted(self._solvers)}"
            )

        chall = authorization.find_challenge(challenge_type)
        solver = self._solvers[challenge_type]
        key_auth = challenge.key_authorization(chall.token, self.account.key_thumbprint)

        logger.info(f"Solving {challenge_type} challenge for {domain}")
        solver.present(domain, chall.token, key_auth)
        try:
            solver.wait_until_ready(domain, chall.token, key_auth)
            chall.respond()
            chall.poll_until_not({"pending", "processing"})

            if chall.status != "valid":
                raise RuntimeError(f"Challenge validation failed for {domain}: {chall.status} {chall.error}")
        finally:
            try:
                solver.cleanup(domain, chall.token, key_auth)
            except Exception as e:
                logger.warning(f"Failed to clean up {challenge_type} challenge for {domain}: {e}")

    def revoke(self, certificate_pem: str, reason: int | None = None) -> None:
        """
        Revoke a certificate issued to this account.

        Raises:
            AcmeProblemError: If the CA rejects the revocation.
            ValueError: If the certificate cannot be parsed.
        """
        if not self._key_id:
            self.register()

        blocks = validation.pem_to_der_blocks(certificate_pem)
        if not blocks:
            raise ValueError("No certificates found in PEM data")

        payload: dict[str, Any] = {"certificate": utils.b64url(blocks[0])}
        if reason is not None:
            payload["reason"] = reason

        r = self.signed_request(self.url_for("revokeCert"), payload)
        self.raise_for_problem(r, (200,))
        logger.info("Certificate revoked")

    def url_for(self, resource: str) -> str:
        """
        Get the URL for a specific ACME resource.

        Raises:
            KeyError: If the directory has no such resource.
        """
        if not self._directory:
            r = self.http.get(self.directory_url)
            r.raise_for_status()

            self._directory = r.json()
            logger.debug(f"Fetched directory: {self._directory}")

        return self._directory[resource]

    def raise_for_problem(self, r: requests.Response, expected: tuple[int, ...]) -> None:
        """
        Raise the RFC 8555 problem carried by an unexpected response.

        Raises:
            AlreadyReplacedError: For an alreadyReplaced problem.
            AcmeProblemError: For any other unexpected status.
        """
        if r.status_code in expected:
            return

        problem_type = ""
        detail = r.text
        try:
            problem = r.json()
            problem_type = problem.get("type", "")
            detail = problem.get("detail", detail)
        except ValueError:
            pass

        logger.debug(f"ACME problem from {r.url}: {r.status_code} {problem_type} {detail}")

        if problem_type == ALREADY_REPLACED:
            raise AlreadyReplacedError(r.status_code, problem_type, detail)
        raise AcmeProblemError(r.status_code, problem_type, detail)

    def signed_request(
        self,
        url: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """
        Send a request signed with the account key id.

        Args:
            url: URL for the request.
            payload: Payload data for the request. None for POST-as-GET.
            headers: Extra request headers (optional).

        Returns:
            requests.Response: Response object.
        """
        if not self._key_id:
            logger.debug("Key ID not found. Looking up the existing account.")
            self.new_account(only_existing=True)

        return self._signed_request(url=url, key={"alg": "RS256", "kid": self._key_id}, payload=payload, headers=headers)

    def format_data(self, url: str, key: dict[str, Any], payload: dict[str, Any] | None) -> dict[str, Any]:
        """
        Build the flattened JWS for a request.

        Args:
            url: URL for the request.
            key: 'jwk' or 'kid' member of the protected header.
            payload: Payload data. None for POST-as-GET.
        """
        protected_header = {"url": url, "nonce": self._nonce, **key}
        protected = utils.b64url(utils.json_encode(protected_header))

        # POST-as-GET signs an empty payload.
        dumped_payload = "" if payload is None else utils.b64url(utils.json_encode(payload))

        signing_input = f"{protected}.{dumped_payload}".encode("utf-8")
        signature = utils.b64url(self.account_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256()))

        return {
            "protected": protected,
            "payload": dumped_payload,
            "signature": signature,
        }

    def _signed_request(
        self,
        url: str,
        key: dict[str, Any],
        payload: dict[str, Any] | None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """Send a signed request to the ACME server with nonce handling."""
        if not self._nonce:
            self._new_nonce()

        for attempt in range(2):  # try once, then retry if badNonce
            data = self.format_data(url, key, payload)
            request_headers = {"Content-Type": "application/jose+json", **(headers or {})}

            logger.debug(f"Sending signed request to {url} (attempt {attempt + 1})")
            response = self.http.post(url, headers=request_headers, json=data)

            new_nonce = response.headers.get("Replay-Nonce")
            if new_nonce:
                self._nonce = new_nonce

            if response.status_code == 400 and attempt == 0:
                try:
                    problem_type = response.json().get("type")
                except ValueError:
                    problem_type = None
                if problem_type == BAD_NONCE:
                    logger.warning("badNonce received, retrying once with new nonce")
                    self._new_nonce()
                    continue

            return response

        return response

    def _new_nonce(self) -> None:
        """Get a new nonce from the ACME server."""
        r = self.http.head(self.url_for("newNonce"))
        r.raise_for_status()

        self._nonce = r.headers["Replay-Nonce"]
