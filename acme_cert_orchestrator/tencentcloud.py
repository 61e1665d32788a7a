"""
Tencent Cloud adapters: SSL certificate store and CDN deployer.

Requests are signed with TC3-HMAC-SHA256.

See https://cloud.tencent.com/document/api/400/41665 (SSL) and
https://cloud.tencent.com/document/api/228/30974 (CDN).
"""

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlsplit

import requests
import requests.auth

from acme_cert_orchestrator import matcher, utils
from acme_cert_orchestrator.deployment import Deployer, JobCounts
from acme_cert_orchestrator.exceptions import TencentCloudAPIError
from acme_cert_orchestrator.store import CertificateStore, VendorCertificateRecord

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "TC3-HMAC-SHA256"
SIGNED_HEADERS = "content-type;host;x-tc-action"
CONTENT_TYPE = "application/json; charset=utf-8"
# Timestamps in API responses are Beijing time.
API_TIMEZONE = timezone(timedelta(hours=8))


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


class TC3Auth(requests.auth.AuthBase):
    """
    TC3-HMAC-SHA256 request signing.

    The service name is taken from the request host and the action from the
    X-TC-Action header, so the header must be set before signing.

    Attributes:
        clock: Returns the signing timestamp (seconds since the epoch).
    """

    def __init__(self, secret_id: str, secret_key: str, clock=time.time) -> None:
        self._secret_id = secret_id
        self._secret_key = secret_key
        self.clock = clock

    @staticmethod
    def credential_scope(host: str, timestamp: int) -> str:
        """Return the '<UTC date>/<service>/tc3_request' scope a signature is bound to."""
        service = host.split(".")[0]
        date = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
        return f"{date}/{service}/tc3_request"

    def signature(self, host: str, action: str, payload: bytes, timestamp: int) -> str:
        """Return the hex signature of a POST request."""
        credential_scope = self.credential_scope(host, timestamp)
        date, service, _ = credential_scope.split("/")

        canonical_headers = f"content-type:{CONTENT_TYPE}\nhost:{host}\nx-tc-action:{action.lower()}\n"
        canonical_request = f"POST\n/\n\n{canonical_headers}\n{SIGNED_HEADERS}\n{_sha256_hex(payload)}"

        string_to_sign = (
            f"{SIGNING_ALGORITHM}\n{timestamp}\n{credential_scope}\n"
            f"{_sha256_hex(canonical_request.encode('utf-8'))}"
        )

        secret_date = _hmac_sha256(f"TC3{self._secret_key}".encode("utf-8"), date)
        secret_service = _hmac_sha256(secret_date, service)
        secret_signing = _hmac_sha256(secret_service, "tc3_request")
        return hmac.new(secret_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        host = urlsplit(r.url).hostname or ""
        action = r.headers["X-TC-Action"]
        body = r.body or b""
        if isinstance(body, str):
            body = body.encode("utf-8")

        timestamp = int(self.clock())
        credential_scope = self.credential_scope(host, timestamp)
        signature = self.signature(host, action, body, timestamp)

        r.headers["Content-Type"] = CONTENT_TYPE
        r.headers["X-TC-Timestamp"] = str(timestamp)
        r.headers["Authorization"] = (
            f"{SIGNING_ALGORITHM} Credential={self._secret_id}/{credential_scope}, "
            f"SignedHeaders={SIGNED_HEADERS}, Signature={signature}"
        )
        return r


class TencentCloudClient:
    """
    Client for one Tencent Cloud API service.

    Args:
        secret_id: SecretId of the API key.
        secret_key: SecretKey of the API key.
        service: Service name, e.g. 'ssl' or 'cdn'.
        version: API version, e.g. '2019-12-05'.
        region: Region (optional, not needed by global services).
        endpoint: Override of https://<service>.tencentcloudapi.com (optional).
    """

    def __init__(
        self,
        secret_id: str,
        secret_key: str,
        service: str,
        version: str,
        region: str = "",
        endpoint: str | None = None,
    ) -> None:
        self.service = service
        self.version = version
        self.region = region
        self.endpoint = endpoint or f"https://{service}.tencentcloudapi.com/"
        self.http = requests.Session()
        self.http.auth = TC3Auth(secret_id, secret_key)

    def close(self) -> None:
        self.http.close()

    def call(self, action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Invoke an API action.

        Returns:
            dict[str, Any]: The 'Response' object of the reply.

        Raises:
            TencentCloudAPIError: If the API returns an error.
            requests.exceptions.RequestException: On transport errors.
        """
        headers = {"X-TC-Action": action, "X-TC-Version": self.version}
        if self.region:
            headers["X-TC-Region"] = self.region

        body = json.dumps(params or {}, separators=(",", ":")).encode("utf-8")
        r = self.http.post(self.endpoint, data=body, headers=headers)
        r.raise_for_status()

        response = r.json().get("Response", {})
        logger.debug(f"tencentcloud request '{self.service}.{action}': params={params}, response={response}")

        error = response.get("Error")
        if error:
            raise TencentCloudAPIError(error.get("Code", ""), error.get("Message", ""), response.get("RequestId", ""))
        return response


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=API_TIMEZONE)
    except ValueError:
        logger.debug(f"Unparseable time from tencentcloud: {value!r}")
        return None


def _certificate_record(item: dict[str, Any]) -> VendorCertificateRecord:
    sans = item.get("SubjectAltName") or []
    metadata = None
    if item.get("Domain"):
        metadata = matcher.CertificateMetadata(
            common_name=item["Domain"],
            subject_alt_names=tuple(sans),
            not_before=_parse_time(item.get("CertBeginTime")),
            not_after=_parse_time(item.get("CertEndTime")),
        )

    return VendorCertificateRecord(
        cert_id=item.get("CertificateId", ""),
        cert_name=item.get("Alias", ""),
        created_at=_parse_time(item.get("InsertTime")),
        metadata=metadata,
        certificate_pem=item.get("CertificatePublicKey") or "",
    )


class TencentCloudSSLStore(CertificateStore):
    """Certificates in Tencent Cloud SSL Certificate Service."""

    provider_name = "tencentcloud-ssl"

    def __init__(self, secret_id: str, secret_key: str, endpoint: str | None = None):
        self.client = TencentCloudClient(secret_id, secret_key, "ssl", "2019-12-05", endpoint=endpoint)

    def list_certificates(self, page: int, page_size: int) -> tuple[list[VendorCertificateRecord], bool]:
        offset = (page - 1) * page_size
        response = self.client.call(
            "DescribeCertificates",
            {"Offset": offset, "Limit": page_size, "CertificateType": "SVR"},
        )

        items = response.get("Certificates") or []
        total = response.get("TotalCount") or 0
        return ([_certificate_record(item) for item in items], offset + len(items) < total)

    def get_certificate_detail(self, cert_id: str) -> VendorCertificateRecord:
        response = self.client.call("DescribeCertificateDetail", {"CertificateId": cert_id})
        return _certificate_record(response)

    def create_certificate(self, name: str, certificate_pem: str, private_key_pem: str, idempotency_token: str) -> str:
        # UploadCertificate has no client token; Repeatable=False makes the
        # service return the existing id for identical content instead.
        logger.debug(f"Uploading certificate '{name}' to tencentcloud-ssl (token={idempotency_token})")
        response = self.client.call(
            "UploadCertificate",
            {
                "CertificatePublicKey": certificate_pem,
                "CertificatePrivateKey": private_key_pem,
                "CertificateType": "SVR",
                "Alias": name,
                "Repeatable": False,
            },
        )
        return response["CertificateId"]


class TencentCloudCDNDeployer(Deployer):
    """Deploys certificates to Tencent Cloud CDN domains through the SSL service."""

    provider_name = "tencentcloud-cdn"

    def __init__(self, secret_id: str, secret_key: str):
        self.ssl = TencentCloudClient(secret_id, secret_key, "ssl", "2019-12-05")
        self.cdn = TencentCloudClient(secret_id, secret_key, "cdn", "2018-06-06")

    def resolve_targets(self, cert_id: str) -> list[str]:
        response = self.cdn.call("DescribeCertDomains", {"CertId": cert_id, "Product": "cdn"})
        return list(response.get("Domains") or [])

    def list_deployed_targets(self, cert_id: str) -> list[str]:
        response = self.ssl.call("DescribeDeployedResources", {"CertificateIds": [cert_id], "ResourceType": "cdn"})

        domains: list[str] = []
        for deployed in response.get("DeployedResources") or []:
            domains.extend(deployed.get("Resources") or [])
        return domains

    def submit(self, cert_id: str, target_ids: list[str]) -> str:
        response = self.ssl.call(
            "DeployCertificateInstance",
            {"CertificateId": cert_id, "ResourceType": "cdn", "Status": 1, "InstanceIdList": target_ids},
        )
        return str(response["DeployRecordId"])

    def poll_status(self, job_id: str) -> JobCounts:
        response = self.ssl.call("DescribeHostDeployRecordDetail", {"DeployRecordId": job_id})
        return JobCounts(
            running=response.get("RunningTotalCount") or 0,
            succeeded=response.get("SuccessTotalCount") or 0,
            failed=response.get("FailedTotalCount") or 0,
            total=response.get("TotalCount"),
        )


def create_store(access_config: dict[str, Any], extended_config: dict[str, Any]) -> TencentCloudSSLStore:
    """Access config: secret_id, secret_key. Extended config: endpoint."""
    return TencentCloudSSLStore(
        utils.get_str(access_config, "secret_id"),
        utils.get_str(access_config, "secret_key"),
        endpoint=utils.get_str(extended_config, "endpoint", "") or None,
    )


def create_deployer(access_config: dict[str, Any], extended_config: dict[str, Any]) -> TencentCloudCDNDeployer:
    """Access config: secret_id, secret_key."""
    return TencentCloudCDNDeployer(
        utils.get_str(access_config, "secret_id"),
        utils.get_str(access_config, "secret_key"),
    )
