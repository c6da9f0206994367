"""
auth.py — OAuth token lifecycle for the accounting ledger.

    authorization_url  — consent URL for a tenant's first connection
    handle_callback    — exchange an authorization code and store the tokens
    get_valid_access_token
                       — return the stored token while it is unexpired,
                         otherwise refresh it and persist the rotated pair

A refresh writes access token, refresh token and expiry in one UPDATE.
Refreshes are serialised per tenant: a thread that waited on the lock
re-reads the credential block and reuses a token another thread just
obtained instead of rotating it a second time.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import requests

from revleak.errors import AuthError
from revleak.locks import TenantLocks
from revleak.models import Company, utcnow
from revleak.store import Store

logger = logging.getLogger(__name__)


class TokenManager:
    """Obtains, refreshes and persists per-tenant ledger access tokens."""

    def __init__(
        self,
        store: Store,
        client_id: str | None,
        client_secret: str | None,
        token_url: str,
        authorize_url: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        timeout: float = 30,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.authorize_url = authorize_url
        self.redirect_uri = redirect_uri
        self.scopes = scopes or []
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock
        self._locks = TenantLocks()

    @classmethod
    def from_config(
        cls,
        cfg: dict[str, Any],
        store: Store,
        session: requests.Session | None = None,
    ) -> "TokenManager":
        ledger_cfg = cfg["ledger"]
        return cls(
            store=store,
            client_id=ledger_cfg.get("client_id"),
            client_secret=ledger_cfg.get("client_secret"),
            token_url=ledger_cfg["token_url"],
            authorize_url=ledger_cfg["authorize_url"],
            redirect_uri=ledger_cfg["redirect_uri"],
            scopes=ledger_cfg.get("scopes"),
            timeout=ledger_cfg.get("timeout_seconds", 30),
            session=session,
        )

    # -----------------------------------------------------------------------
    # Connect flow
    # -----------------------------------------------------------------------

    def authorization_url(self, company_id: str) -> str:
        """Build the consent URL; the tenant id travels back in `state`."""
        params = {
            "client_id": self.client_id or "",
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "redirect_uri": self.redirect_uri,
            "state": company_id,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def handle_callback(self, code: str, account_id: str, company_id: str) -> None:
        """Exchange an authorization code and mark the tenant as connected.

        Raises:
            AuthError: If the tenant does not exist or the exchange fails.
        """
        with self.store.transaction() as repo:
            if repo.get_company(company_id) is None:
                raise AuthError(f"Unknown company {company_id}", company_id)

        token = self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            company_id,
        )
        now = self._clock()
        with self.store.transaction() as repo:
            changed = repo.update_company(
                company_id,
                ledger_connected=True,
                ledger_account_id=account_id,
                access_token=token["access_token"],
                refresh_token=token["refresh_token"],
                token_expires_at=now + timedelta(seconds=token["expires_in"]),
                last_sync_at=now,
            )
        if not changed:
            raise AuthError(f"Unknown company {company_id}", company_id)
        logger.info("Ledger connected for company %s (account %s)", company_id, account_id)

    # -----------------------------------------------------------------------
    # Token lifecycle
    # -----------------------------------------------------------------------

    def get_valid_access_token(self, company: Company) -> str:
        """Return a usable access token for `company`, refreshing it if expired.

        The passed-in company object is updated in place with any rotated
        credentials so callers holding it see the new values.

        Raises:
            AuthError: If the tenant is not connected or the refresh fails.
        """
        if not company.ledger_connected or not company.refresh_token:
            raise AuthError(f"Company {company.id} is not connected to the ledger", company.id)

        if self._is_fresh(company.access_token, company.token_expires_at):
            return company.access_token

        with self._locks.hold(company.id):
            with self.store.transaction() as repo:
                current = repo.get_company(company.id)
            if current is None:
                raise AuthError(f"Unknown company {company.id}", company.id)

            # Another worker may have refreshed while we waited for the lock
            if self._is_fresh(current.access_token, current.token_expires_at):
                self._apply(company, current.access_token, current.refresh_token,
                            current.token_expires_at)
                return current.access_token

            token = self._request_token(
                {"grant_type": "refresh_token", "refresh_token": current.refresh_token},
                company.id,
            )
            expires_at = self._clock() + timedelta(seconds=token["expires_in"])
            with self.store.transaction() as repo:
                repo.update_company(
                    company.id,
                    access_token=token["access_token"],
                    refresh_token=token["refresh_token"],
                    token_expires_at=expires_at,
                )

        self._apply(company, token["access_token"], token["refresh_token"], expires_at)
        logger.info("Ledger token refreshed for company %s (expires %s)", company.id, expires_at)
        return token["access_token"]

    def _is_fresh(self, access_token: str | None, expires_at: datetime | None) -> bool:
        return bool(access_token) and expires_at is not None and self._clock() < expires_at

    @staticmethod
    def _apply(
        company: Company,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        company.access_token = access_token
        company.refresh_token = refresh_token
        company.token_expires_at = expires_at

    def _request_token(self, form: dict[str, str], company_id: str) -> dict[str, Any]:
        """POST to the token endpoint and validate the response body.

        Returns:
            Dict with access_token, refresh_token and integer expires_in.
        """
        try:
            response = self.session.post(
                self.token_url,
                data=form,
                auth=(self.client_id or "", self.client_secret or ""),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Token endpoint unreachable: {exc}", company_id) from exc

        if not 200 <= response.status_code < 300:
            raise AuthError(
                f"Token {form['grant_type']} rejected with HTTP {response.status_code}",
                company_id,
            )

        try:
            body = response.json()
            token = {
                "access_token": body["access_token"],
                "refresh_token": body["refresh_token"],
                "expires_in": int(body["expires_in"]),
            }
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(f"Malformed token response: {exc}", company_id) from exc

        if not token["access_token"] or not token["refresh_token"]:
            raise AuthError("Token response carried an empty token", company_id)
        return token
