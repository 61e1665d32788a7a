"""
Linode Object Storage client and http-01 solver.

A bucket with a custom domain (CNAME to <bucket>.<cluster>.linodeobjects.com)
serves objects under that domain, so http-01 proofs can be published by
uploading them to the bucket.

See https://www.linode.com/docs/api/.
"""

import logging
import re
from typing import Any
from urllib.parse import quote, urljoin, urlunsplit

import dns.resolver
import requests
import requests.auth

from acme_cert_orchestrator import challenge, utils
from acme_cert_orchestrator.exceptions import BucketAccessError, BucketNotFoundError

logger = logging.getLogger(__name__)

LINODE_API = "https://api.linode.com/"
BUCKET_HOSTNAME = re.compile(r"^([^.]+)\.([^.]+)\.linodeobjects\.com$")


class LinodeObjectStorageClient:
    """
    Object Storage Client for Linode.

    Attributes:
        http (requests.Session): A session object for making HTTP requests.
    """

    def __init__(self, token: str) -> None:
        self.http = requests.Session()
        self.http.auth = BearerAuth(token)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.http.close()

    def close(self) -> None:
        """
        Closes the HTTP session.
        """
        self.__exit__(None, None, None)

    def _bucket_url(self, cluster: str, label: str, suffix: str) -> str:
        return urljoin(LINODE_API, f"v4/object-storage/buckets/{quote(cluster)}/{quote(label)}/{suffix}")

    def list_buckets(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """
        Retrieves all buckets, following pagination.

        Raises:
            requests.exceptions.HTTPError: If the API rejects the request.
        """
        params = params or {}
        all_buckets: list[dict[str, Any]] = []
        page = 1
        total_pages = 1

        url = urljoin(LINODE_API, "v4/object-storage/buckets")

        while page <= total_pages:
            response = self.http.get(url, params={**params, "page": page})
            response.raise_for_status()

            data = response.json()
            current_buckets = data.get("data", [])
            all_buckets.extend(current_buckets)
            total_pages = data.get("pages", page)

            if not current_buckets:
                break
            page += 1

        return all_buckets

    def find_bucket(self, label: str, cluster: str = "") -> dict[str, Any]:
        """
        Find a bucket by label (and cluster, if given).

        Raises:
            BucketNotFoundError: If no such bucket exists.
        """
        for bucket in self.list_buckets():
            if bucket.get("label") == label and (not cluster or bucket.get("cluster") == cluster):
                return bucket
        raise BucketNotFoundError(label)

    def create_object_url(
        self,
        cluster: str,
        label: str,
        name: str,
        method: str = "GET",
        content_type: str = "",
        expires_in: int = -1,
    ) -> str:
        """
        Generates a pre-signed URL for an object in the specified bucket.

        Raises:
            ValueError: If the method is not supported.
            BucketAccessError: If the API rejects the request.
        """
        if method not in ["GET", "PUT", "DELETE"]:
            raise ValueError("Method must be one of GET, PUT, or DELETE")

        payload: dict[str, str | int] = {"method": method, "name": name}
        if expires_in >= 0:
            payload["expires_in"] = expires_in
        if content_type:
            payload["content_type"] = content_type

        url = self._bucket_url(cluster, label, "object-url")
        logger.debug(f"Creating object URL for {method} request to {url} with payload {payload}")

        r = self.http.post(url, json=payload)
        if r.status_code >= 400:
            logger.error(f"Error detail from Linode API: {r.text}")
            raise BucketAccessError(label, r.status_code)

        return r.json()["url"]

    def update_object_acl(self, cluster: str, label: str, name: str, acl: str) -> dict[str, Any]:
        """
        Updates the Access Control List (ACL) for the specified object.

        Raises:
            BucketAccessError: If the API rejects the request.
        """
        payload = {"name": name, "acl": acl}
        logger.debug(f"Updating ACL for object {name} using payload {payload}")

        r = self.http.put(self._bucket_url(cluster, label, "object-acl"), json=payload)
        if r.status_code >= 400:
            logger.error(f"Error detail from Linode API: {r.text}")
            raise BucketAccessError(label, r.status_code)

        return r.json()


class BearerAuth(requests.auth.AuthBase):
    """
    Bearer Authentication for Linode API.

    Attributes:
        token (str): The Bearer token used for authentication.
    """

    def __init__(self, token: str) -> None:
        self._token = token

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        r.headers["Authorization"] = f"Bearer {self._token}"
        return r


def discover_bucket_from_dns(domain: str) -> tuple[str, str] | None:
    """
    Discover bucket label and cluster from the domain's CNAME record.

    Returns:
        tuple[str, str] | None: (bucket_label, cluster), or None if the domain
        does not point at a Linode bucket.
    """
    try:
        answers = dns.resolver.resolve(domain, "CNAME")
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers) as e:
        logger.warning(f"DNS lookup failed for {domain}: {e}")
        return None

    for rdata in answers:
        cname = str(rdata.target).rstrip(".")
        logger.debug(f"Found CNAME: {domain} → {cname}")
        match = BUCKET_HOSTNAME.match(cname)
        if match:
            logger.info(f"Discovered bucket '{match.group(1)}' in cluster '{match.group(2)}'")
            return (match.group(1), match.group(2))

    logger.warning(f"No Linode Object Storage CNAME found for: {domain}")
    return None


class LinodeObjectStorageHttp01Solver(challenge.Http01Solver):
    """
    http-01 solver that uploads proofs to the bucket behind each domain.

    Args:
        client: Object storage client.
        bucket_label: Bucket to use for every domain; discovered from DNS if empty.
        cluster: Cluster of bucket_label (optional).
        verify: Check the proof is reachable over HTTP before validation.
        expires_in: Lifetime of the pre-signed URLs in seconds.
    """

    def __init__(
        self,
        client: LinodeObjectStorageClient,
        bucket_label: str = "",
        cluster: str = "",
        verify: bool = True,
        expires_in: int = 360,
    ):
        super().__init__()
        self.client = client
        self.bucket_label = bucket_label
        self.cluster = cluster
        self.verify = verify
        self.expires_in = expires_in

    def _bucket_for(self, domain: str) -> tuple[str, str]:
        if self.bucket_label and self.cluster:
            return (self.cluster, self.bucket_label)

        label = self.bucket_label
        if not label:
            discovered = discover_bucket_from_dns(domain)
            if discovered is None:
                raise ValueError(
                    f"Could not discover bucket for domain '{domain}'. Make sure the domain has a "
                    f"CNAME pointing to a Linode bucket, or configure the bucket explicitly."
                )
            label, cluster = discovered
            return (cluster, label)

        bucket = self.client.find_bucket(label)
        return (bucket["cluster"], label)

    def present(self, domain: str, token: str, key_auth: str) -> None:
        cluster, label = self._bucket_for(domain)
        obj_name = challenge.get_challenge_object_name(token)

        put_url = self.client.create_object_url(
            cluster, label, obj_name, "PUT", "text/plain", expires_in=self.expires_in
        )
        logger.debug(f"Uploading challenge to: {put_url}")
        response = requests.put(put_url, data=key_auth, headers={"Content-Type": "text/plain"})
        response.raise_for_status()

        self.client.update_object_acl(cluster, label, obj_name, "public-read")

        if self.verify:
            url = urlunsplit(("http", domain, obj_name, "", ""))
            logger.debug(f"Verifying challenge accessible at: {url}")
            requests.head(url).raise_for_status()

        logger.info(f"Published http-01 proof for {domain} in bucket {label}")

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        cluster, label = self._bucket_for(domain)
        obj_name = challenge.get_challenge_object_name(token)

        delete_url = self.client.create_object_url(cluster, label, obj_name, "DELETE", expires_in=self.expires_in)
        logger.debug(f"Deleting challenge from: {delete_url}")
        requests.delete(delete_url).raise_for_status()


def create_solver(access_config: dict[str, Any], extended_config: dict[str, Any]) -> LinodeObjectStorageHttp01Solver:
    """
    Build the Linode http-01 solver from provider configuration.

    Access config: token. Extended config: bucket, cluster, verify.
    """
    client = LinodeObjectStorageClient(utils.get_str(access_config, "token"))
    return LinodeObjectStorageHttp01Solver(
        client,
        bucket_label=utils.get_str(extended_config, "bucket", ""),
        cluster=utils.get_str(extended_config, "cluster", ""),
        verify=utils.get_bool(extended_config, "verify", True),
    )
