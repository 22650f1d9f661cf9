"""OAuth token acquisition for Power Platform APIs.

Tokens are fetched once per script run per audience and never refreshed.
The Flow management API and the Dataverse Web API are different OAuth
resources, so a run that talks to both holds two independent tokens.
"""

import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from _shared.errors import AuthError

FLOW_API_RESOURCE = "https://service.flow.microsoft.com"
BAP_API_RESOURCE = "https://api.bap.microsoft.com"


@dataclass(frozen=True)
class Token:
    value: str = field(repr=False)
    audience: str
    expires_on: Optional[int] = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.value}"}


def scope_for(audience: str) -> str:
    """Return the client-credentials scope for an audience URL."""
    return f"{audience.rstrip('/')}/.default"


def token_for(credential, audience: str) -> Token:
    """Acquire a token for ``audience`` from an azure-identity credential.

    Any azure-core error (rejected secret, unknown tenant, network failure)
    is raised as AuthError carrying the upstream message.
    """
    from azure.core.exceptions import AzureError

    try:
        access = credential.get_token(scope_for(audience))
    except AzureError as e:
        raise AuthError(audience, detail=getattr(e, "message", None) or str(e)) from e
    return Token(value=access.token, audience=audience, expires_on=access.expires_on)


def acquire_token(tenant_id: str, client_id: str, client_secret: str, audience: str) -> Token:
    """Client-credentials exchange for one audience. Never retried."""
    from azure.identity import ClientSecretCredential

    if not (tenant_id and client_id and client_secret):
        raise AuthError(audience, detail="tenant id, client id and client secret are required")
    credential = ClientSecretCredential(tenant_id, client_id, client_secret)
    token = token_for(credential, audience)
    print(f"  ✓ Token acquired for {audience}", file=sys.stderr)
    return token
