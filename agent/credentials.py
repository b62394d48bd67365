from __future__ import annotations

import logging
from typing import Optional

from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import ClientSecretCredential

from agent.errors import AuthError


logger = logging.getLogger(__name__)

FOUNDRY_SCOPE = "https://ai.azure.com/.default"


class FoundryCredential:
    """Service principal credential for the Foundry API.

    Token caching and refresh are left to ``azure.identity``.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority_host: Optional[str] = None,
    ):
        kwargs = {"authority": authority_host} if authority_host else {}
        self._credential = ClientSecretCredential(tenant_id, client_id, client_secret, **kwargs)

    def acquire_token(self, scope: str = FOUNDRY_SCOPE) -> str:
        try:
            access_token = self._credential.get_token(scope)
        except ClientAuthenticationError as exc:
            raise AuthError(f"Azure rejected the client credentials: {exc.message}") from exc
        except AzureError as exc:
            raise AuthError(f"Token request failed: {exc.message}") from exc

        if not access_token or not access_token.token:
            raise AuthError("Failed to acquire Azure access token")
        return access_token.token

    def close(self) -> None:
        self._credential.close()
