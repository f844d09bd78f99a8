"""
Identity provider and account service clients.

Tokens handed to tasks come from three places: the user's personal access
token (account service), the caller's own bearer token, and tokens the
identity provider brokers for linked external accounts.
"""

import logging
from typing import Optional
from urllib.parse import parse_qs

import httpx

from ..config import EndpointSection, IdentityProviderSection
from ..errors import AuthenticationError, STATUS_FAILED_TO_RETRIEVE_PERSONAL_TOKEN, STATUS_OK

logger = logging.getLogger(__name__)


def raw_token(bearer_token: str) -> str:
    """Strip the "Bearer " scheme from an Authorization header value."""
    scheme, _, token = bearer_token.partition(" ")
    return token if token else scheme


class IdentityProvider:
    """Client for the identity provider realm."""

    def __init__(
        self,
        settings: IdentityProviderSection,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.url_base = settings.url_base.rstrip("/")
        self.realm = settings.realm
        self.client = client or httpx.Client(timeout=timeout)

    @property
    def realm_url(self) -> str:
        return f"{self.url_base}/realms/{self.realm}"

    def get_idp_token(self, bearer_token: str, provider_alias: str) -> str:
        """Token stored by the broker for ``provider_alias``; "" when unavailable."""
        url = f"{self.realm_url}/broker/{provider_alias}/token"
        try:
            response = self.client.get(url, headers={"Authorization": bearer_token})
        except httpx.RequestError as e:
            logger.error(f"Failed to call the IdP endpoint: {e}")
            return ""

        if response.status_code != 200:
            logger.error(
                f"The IdP rejected the request with the status code: {response.status_code}"
            )
            return ""

        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                body = response.json()
            except ValueError as e:
                logger.error(f"The IdP returned an unreadable token response: {e}")
                return ""
            token = body.get("access_token", "") if isinstance(body, dict) else ""
            return token if isinstance(token, str) else ""
        # access_token=<token>&scope=<scope>&token_type=<type>
        values = parse_qs(response.text)
        return values.get("access_token", [""])[0]

    def get_username(self, bearer_token: str) -> str:
        """preferred_username of the caller from the userinfo endpoint."""
        url = f"{self.realm_url}/protocol/openid-connect/userinfo"
        try:
            response = self.client.get(url, headers={"Authorization": bearer_token})
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to get the logged on user: {e}")
            return ""
        if not isinstance(body, dict):
            return ""
        return body.get("preferred_username", "")


class AccountService:
    """Client for the account service."""

    def __init__(
        self,
        settings: EndpointSection,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.endpoint = settings.endpoint.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def get_personal_token(self, bearer_token: str) -> str:
        """The user's platform personal token."""
        try:
            response = self.client.get(
                f"{self.endpoint}/users/current/personaltoken",
                headers={"Authorization": bearer_token},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to retrieve a user's personal token: {e}")
            raise AuthenticationError(
                "Failed to retrieve a user's personal token.",
                code=STATUS_FAILED_TO_RETRIEVE_PERSONAL_TOKEN,
            ) from e

        if not isinstance(body, dict):
            body = {}
        if body.get("Code") not in (0, STATUS_OK):
            raise AuthenticationError(
                body.get("Message") or "Failed to retrieve a user's personal token.",
                code=STATUS_FAILED_TO_RETRIEVE_PERSONAL_TOKEN,
            )
        return body.get("Message", "")
