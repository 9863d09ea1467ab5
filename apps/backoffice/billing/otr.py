from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from ..settings import settings
from ..utils import mask_secret

logger = logging.getLogger(__name__)


class OtrAuthError(RuntimeError):
    pass


class OtrSession:
    """Connection details shared by the OTR broker-check and invoice clients.

    Username/password are optional: some OTR environments authenticate on the
    subscription key alone, others also want a bearer token from /auth/token.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        is_test: Optional[bool] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or settings.OTR_API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.OTR_API_KEY
        self.username = username if username is not None else settings.OTR_USERNAME
        self.password = password if password is not None else settings.OTR_PASSWORD
        self.is_test = bool(settings.OTR_IS_TEST if is_test is None else is_test)
        self.timeout = float(timeout if timeout is not None else settings.OTR_TIMEOUT_SECONDS)
        self._client = client or httpx.Client(timeout=self.timeout)

    @property
    def configured(self) -> bool:
        return bool((self.api_key or "").strip())

    def describe(self) -> str:
        return f"{self.base_url} key={mask_secret(self.api_key or '')} test={self.is_test}"

    def headers(self, *, token: Optional[str] = None) -> Dict[str, str]:
        h = {
            "Accept": "application/json",
            "ocp-apim-subscription-key": self.api_key or "",
            "x-is-test": "true" if self.is_test else "false",
        }
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    def get_token(self) -> Optional[str]:
        """Fetch a bearer token when credentials are configured; None when not needed."""
        if not (self.username and self.password):
            return None
        resp = self._client.post(
            f"{self.base_url}/auth/token",
            data={"username": self.username, "password": self.password},
            headers={**self.headers(), "Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            logger.warning("OTR auth failed (%s) against %s", resp.status_code, self.describe())
            raise OtrAuthError(f"Authentication failed: {resp.status_code}")
        token = (resp.json() or {}).get("access_token")
        if not token:
            raise OtrAuthError("Authentication failed: no access_token in response")
        return str(token)

    def get(self, path: str, *, token: Optional[str] = None) -> httpx.Response:
        return self._client.get(f"{self.base_url}{path}", headers=self.headers(token=token), timeout=self.timeout)

    def post_json(self, path: str, payload: Dict, *, token: Optional[str] = None) -> httpx.Response:
        return self._client.post(
            f"{self.base_url}{path}",
            json=payload,
            headers={**self.headers(token=token), "Content-Type": "application/json"},
            timeout=self.timeout,
        )
