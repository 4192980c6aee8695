"""
External identity provider lookup.

Login through an external provider exchanges the provider's access token for
the provider's own user id and name; the account layer maps that id to a
local user.
"""

import logging
from dataclasses import dataclass

import requests

from .exceptions import InternalError, UnauthorizedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    client_id: str
    username: str


class DiscordIdentityProvider:
    """Resolves a Discord OAuth access token to the Discord account behind it."""

    def __init__(self, api_url: str = "https://discord.com/api/users/@me", timeout: float = 10.0):
        self.api_url = api_url
        self.timeout = timeout

    def fetch_identity(self, access_token: str) -> ExternalIdentity:
        """
        Look up the account owning ``access_token``.

        Raises:
            UnauthorizedError: the provider rejected the token
            InternalError: the provider could not be reached or answered garbage
        """
        try:
            response = requests.get(
                self.api_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Identity provider request failed: {e}")
            raise InternalError("Failed to reach identity provider.") from e

        if response.status_code in (401, 403):
            raise UnauthorizedError("Access token was rejected.")
        if response.status_code != 200:
            logger.error(f"Identity provider answered {response.status_code}")
            raise InternalError("Identity provider returned an error.")

        try:
            payload = response.json()
            return ExternalIdentity(client_id=str(payload["id"]), username=str(payload["username"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Malformed identity provider response: {e}")
            raise InternalError("Identity provider returned an invalid response.") from e
