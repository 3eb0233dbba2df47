"""
IAM access tokens for the cloud API.

A token is requested for either an api key or a compute-identity (trusted profile) id, and kept
until less than `EXPIRY_MARGIN` seconds of its lifetime remain. Token requests go to the private
IAM endpoint first; when that one times out the request is repeated once against the public endpoint.
"""

import base64
import json
import threading
import time

import requests
from requests.utils import default_user_agent

from .configuration import AUTH_IAM, public_iam_url
from .exceptions import BackendError, ProviderError
from .logging import logger


APIKEY_GRANT = "urn:ibm:params:oauth:grant-type:apikey"
CR_TOKEN_GRANT = "urn:ibm:params:oauth:grant-type:cr-token"


def token_expiry(token):
    """Return the 'exp' claim of a JWT (the signature is not verified)"""
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        return int(json.loads(base64.urlsafe_b64decode(payload))["exp"])
    except (IndexError, KeyError, TypeError, ValueError):
        return 0


def failure_kind(error: BackendError) -> str:
    if error.is_timeout:
        return "Timeout"
    if error.kind == "transport":
        return "EndpointNotReachable"
    return "AuthenticationFailed"


class TokenProvider:

    EXPIRY_MARGIN = 300

    def __init__(self, iam_url, auth_type=AUTH_IAM, api_key="", profile_id="", cr_token_path=None, timeout=30):
        self.iam_url = iam_url.rstrip("/")
        self.auth_type = auth_type
        self.api_key = api_key
        self.profile_id = profile_id
        self.cr_token_path = cr_token_path
        self.timeout = timeout
        self.http = requests.Session()
        self.http.headers["Accept"] = "application/json"
        self.http.headers["User-Agent"] = f"ibm-vpc-block-csi-driver {default_user_agent()}"
        self._token = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, cr_token_path=None):
        return cls(
            iam_url=settings.iam_url, auth_type=settings.auth_type, api_key=settings.api_key,
            profile_id=settings.profile_id, cr_token_path=cr_token_path,
        )

    @property
    def auth_name(self):
        return "api key" if self.auth_type == AUTH_IAM else "compute identity"

    def lifetime(self, now=None):
        if not self._token:
            return 0
        return token_expiry(self._token) - int(now if now is not None else time.time())

    def get_token(self, fresh=False):
        with self._lock:
            if not fresh and self.lifetime() > self.EXPIRY_MARGIN:
                logger.debug(f"Fetched iam token from cache (lifetime: {self.lifetime()}s)")
                return self._token

            try:
                token = self._request_token(self.iam_url)
            except BackendError as exc:
                public_url = public_iam_url(self.iam_url)
                if not exc.is_timeout or public_url == self.iam_url:
                    raise ProviderError(
                        failure_kind(exc),
                        f"Error fetching iam token using {self.auth_name}", backend_error=exc,
                    ) from exc
                logger.info("Updated IAM URL from private to public, retrying to fetch IAM token")
                try:
                    token = self._request_token(public_url)
                except BackendError as exc:
                    raise ProviderError(
                        failure_kind(exc),
                        f"Error fetching iam token using {self.auth_name}", backend_error=exc,
                    ) from exc

            self._token = token
            logger.info(f"Fetched fresh iam token (lifetime: {self.lifetime()}s)")
            return token

    def _grant(self):
        if self.auth_type == AUTH_IAM:
            return dict(grant_type=APIKEY_GRANT, apikey=self.api_key)
        cr_token = self.cr_token_path.read().strip()
        return dict(grant_type=CR_TOKEN_GRANT, cr_token=cr_token, profile_id=self.profile_id)

    def _request_token(self, url):
        url = f"{url}/identity/token"
        logger.info(f">>> [POST] {url} ({self.auth_name})")
        try:
            resp = self.http.post(url, data=self._grant(), timeout=self.timeout)
        except requests.Timeout as exc:
            raise BackendError(
                "timeout", message=f"Client.Timeout exceeded while awaiting headers ({url})", wrapped=exc
            ) from exc
        except requests.ConnectionError as exc:
            raise BackendError("transport", message=f"IAM endpoint {url} is not reachable: {exc}", wrapped=exc) from exc

        if not resp.ok:
            raise BackendError(
                "iam", code=str(resp.status_code), http_status=resp.status_code, message=resp.text[:512]
            )
        token = resp.json().get("access_token")
        if not token:
            raise BackendError("iam", http_status=resp.status_code, message="Token response received is empty")
        logger.info(f"<<< [POST] {url}")
        return token
