"""Federated identity providers (OAuth2 authorization-code exchange)."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx

from authgate.config import get_settings

logger = logging.getLogger("authgate")


class FederationError(Exception):
    """The provider could not vouch for an identity."""


@dataclass
class ExternalIdentity:
    """A verified identity returned by a provider."""

    provider: str
    subject: str
    email: str
    email_verified: bool
    name: str = ""
    image: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    access_token_expires_at: datetime | None = None
    scope: str | None = None


class FederatedIdentityProvider(Protocol):
    name: str

    def exchange(self, code: str) -> ExternalIdentity: ...


class GoogleIdentityProvider:
    """Google OpenID Connect via the authorization-code flow."""

    name = "google"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        client: httpx.Client | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.client = client or httpx.Client(timeout=10.0)

    def exchange(self, code: str) -> ExternalIdentity:
        """Trade an authorization code for tokens, then read the user's profile."""
        try:
            token_response = self.client.post(
                self.TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
            if token_response.status_code != 200:
                raise FederationError(f"token exchange failed with status {token_response.status_code}")
            tokens = token_response.json()

            userinfo_response = self.client.get(
                self.USERINFO_URL,
                headers={"Authorization": f"Bearer {tokens['access_token']}"},
            )
            if userinfo_response.status_code != 200:
                raise FederationError(f"userinfo lookup failed with status {userinfo_response.status_code}")
            profile = userinfo_response.json()
            expires_in = tokens.get("expires_in")
            lifetime = timedelta(seconds=int(expires_in)) if expires_in else None
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise FederationError(str(e)) from e

        if not profile.get("sub") or not profile.get("email"):
            raise FederationError("profile is missing sub or email")

        return ExternalIdentity(
            provider=self.name,
            subject=str(profile["sub"]),
            email=profile["email"],
            email_verified=bool(profile.get("email_verified", False)),
            name=profile.get("name", ""),
            image=profile.get("picture"),
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            access_token_expires_at=datetime.utcnow() + lifetime if lifetime else None,
            scope=tokens.get("scope"),
        )


def build_identity_providers() -> dict[str, FederatedIdentityProvider]:
    """Providers configured through the environment."""
    settings = get_settings()
    providers: dict[str, FederatedIdentityProvider] = {}
    if settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET:
        providers["google"] = GoogleIdentityProvider(
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            redirect_uri=settings.GOOGLE_REDIRECT_URI,
        )
    else:
        logger.info("Google sign-in disabled: GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set")
    return providers
