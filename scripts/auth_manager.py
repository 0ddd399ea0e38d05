#!/usr/bin/env python3
"""Authentication manager for getgmail.

Implements the installed-app OAuth2 flow against Google's token endpoint:
the user pastes the authorization code once, then the refresh token keeps
the read-only Gmail access token alive.
"""

from __future__ import annotations

import json
import os
import sys
import time
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from token_store import TokenStore


class AuthConfigError(RuntimeError):
    """Raised when required auth configuration is missing or invalid."""


class DependencyError(RuntimeError):
    """Raised when runtime dependencies are missing."""


class AuthError(RuntimeError):
    """Raised when authentication fails."""


DEFAULT_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
DEFAULT_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URI = "http://localhost"
EXPIRY_MARGIN_SECONDS = 60
TOKEN_TIMEOUT_SECONDS = 30


@dataclass
class AuthConfig:
    client_id: str
    client_secret: str
    auth_uri: str
    token_uri: str
    redirect_uri: str
    scopes: List[str]
    profile: str
    token_store_mode: str
    credentials_file: Optional[str] = None

    @classmethod
    def from_env(cls, profile_override: Optional[str] = None) -> "AuthConfig":
        profile = profile_override or os.environ.get("GMAIL_PROFILE", "default")
        credentials_file = os.environ.get("GOOGLE_CREDENTIALS_FILE", "").strip()
        scopes = _parse_scopes(os.environ.get("GMAIL_SCOPES"))
        token_store_mode = os.environ.get("GMAIL_TOKEN_STORE", "auto").strip().lower() or "auto"

        if token_store_mode not in {"auto", "keyring", "file"}:
            raise AuthConfigError(
                "GMAIL_TOKEN_STORE must be one of: auto, keyring, file"
            )

        client: Dict[str, Any] = {}
        if credentials_file:
            client = _load_client_secrets(Path(credentials_file).expanduser())

        redirect_uris = client.get("redirect_uris") or [DEFAULT_REDIRECT_URI]
        return cls(
            client_id=str(client.get("client_id") or "").strip(),
            client_secret=str(client.get("client_secret") or "").strip(),
            auth_uri=str(client.get("auth_uri") or DEFAULT_AUTH_URI),
            token_uri=str(client.get("token_uri") or DEFAULT_TOKEN_URI),
            redirect_uri=str(redirect_uris[0]),
            scopes=scopes,
            profile=profile,
            token_store_mode=token_store_mode,
            credentials_file=credentials_file or None,
        )


class AuthManager:
    def __init__(
        self,
        config: AuthConfig,
        store: Optional[TokenStore] = None,
        http: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self._http = http
        self._token: Optional[Dict[str, Any]] = None

        if store is None:
            prefer_keyring = config.token_store_mode in {"auto", "keyring"}
            require_keyring = config.token_store_mode == "keyring"
            store = TokenStore(
                profile=config.profile,
                prefer_keyring=prefer_keyring,
                require_keyring=require_keyring,
            )
        self.store = store

    def status(self) -> Dict[str, Any]:
        base = {
            "profile": self.config.profile,
            "configured": bool(self.config.client_id),
            "credentials_file": self.config.credentials_file,
            "scopes": self.config.scopes,
            "token_store_backend": self.store.backend_name(),
            "authenticated": False,
        }

        if not self.config.client_id:
            base["message"] = "GOOGLE_CREDENTIALS_FILE is not set or has no client_id"
            return base

        if not self._load_token():
            base["message"] = "No cached token for this profile; run auth login"
            return base

        try:
            self.get_access_token()
        except (AuthError, DependencyError) as err:
            base["message"] = str(err)
            return base

        base["authenticated"] = True
        base["expires_on"] = _epoch_to_iso8601((self._token or {}).get("expires_at"))
        return base

    def authorization_url(self) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.config.auth_uri}?{urlencode(params)}"

    def login(
        self,
        open_browser: bool = False,
        read_code: Callable[[], str] = lambda: input("Authorization code: "),
    ) -> Dict[str, Any]:
        if not self.config.client_id:
            raise AuthConfigError(
                "GOOGLE_CREDENTIALS_FILE is required. Set it before running auth login."
            )

        url = self.authorization_url()
        print(
            f"Go to the following link in your browser then type the authorization code:\n{url}",
            file=sys.stderr,
        )
        if open_browser:
            webbrowser.open(url)

        code = read_code().strip()
        if not code:
            raise AuthError("No authorization code entered")

        result = self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        })
        token = self._store_token(result, previous=None)

        return {
            "profile": self.config.profile,
            "scopes": sorted(str(token.get("scope") or "").split()),
            "expires_on": _epoch_to_iso8601(token.get("expires_at")),
            "has_refresh_token": bool(token.get("refresh_token")),
            "token_store_backend": self.store.backend_name(),
        }

    def logout(self) -> Dict[str, Any]:
        self.store.delete()
        self._token = None
        return {
            "profile": self.config.profile,
            "logged_out": True,
        }

    def get_access_token(self) -> str:
        token = self._token or self._load_token()
        if not token:
            raise AuthError(
                f"No cached token for profile '{self.config.profile}'. Run auth login first."
            )

        expires_at = float(token.get("expires_at") or 0)
        if token.get("access_token") and expires_at - EXPIRY_MARGIN_SECONDS > self.clock():
            self._token = token
            return str(token["access_token"])

        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise AuthError(
                "Access token expired and no refresh token is cached. Run auth login again."
            )
        if not self.config.client_id:
            raise AuthConfigError("GOOGLE_CREDENTIALS_FILE is required to refresh the access token")

        result = self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        refreshed = self._store_token(result, previous=token)
        return str(refreshed["access_token"])

    def _load_token(self) -> Optional[Dict[str, Any]]:
        return self.store.load()

    def _store_token(self, result: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if "access_token" not in result:
            raise AuthError(_extract_auth_error(result))

        token = dict(previous or {})
        token.update({
            "access_token": result["access_token"],
            "token_type": result.get("token_type", "Bearer"),
            "scope": result.get("scope", token.get("scope", " ".join(self.config.scopes))),
            "expires_at": int(self.clock()) + int(result.get("expires_in") or 3600),
        })
        # Google only returns a refresh token on the first consent.
        if result.get("refresh_token"):
            token["refresh_token"] = result["refresh_token"]

        self.store.save(token)
        self._token = token
        return token

    def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        http = self._ensure_http()
        payload = dict(form)
        payload["client_id"] = self.config.client_id
        if self.config.client_secret:
            payload["client_secret"] = self.config.client_secret

        try:
            response = http.post(self.config.token_uri, data=payload, timeout=TOKEN_TIMEOUT_SECONDS)
        except http.RequestException as err:
            raise AuthError(f"Token endpoint unreachable: {err}") from err

        try:
            result = response.json()
        except ValueError:
            result = {}
        if response.status_code >= 400 or not isinstance(result, dict):
            raise AuthError(_extract_auth_error(result if isinstance(result, dict) else None))
        return result

    def _ensure_http(self):
        if self._http is not None:
            return self._http

        try:
            import requests  # type: ignore
        except Exception as err:
            raise DependencyError(
                "Missing dependency 'requests'. Install with: python3 -m pip install requests"
            ) from err

        self._http = requests
        return self._http


def _load_client_secrets(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise AuthConfigError(f"Credentials file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise AuthConfigError(f"Unable to parse client secret file '{path}': {err}") from err

    if not isinstance(payload, dict):
        raise AuthConfigError(f"Client secret file '{path}' must contain a JSON object")

    section = payload.get("installed") or payload.get("web") or payload
    if not isinstance(section, dict) or not section.get("client_id"):
        raise AuthConfigError(f"Client secret file '{path}' has no client_id")
    return section


def _parse_scopes(raw: Optional[str]) -> List[str]:
    if raw is None:
        return list(DEFAULT_SCOPES)

    parts: List[str] = []
    seen = set()
    for chunk in raw.replace(",", " ").split():
        scope = chunk.strip()
        if not scope or scope in seen:
            continue
        seen.add(scope)
        parts.append(scope)

    return parts or list(DEFAULT_SCOPES)


def _epoch_to_iso8601(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        epoch = int(value)
    except (TypeError, ValueError):
        return None
    dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
    return dt.isoformat()


def _extract_auth_error(result: Optional[Dict[str, Any]]) -> str:
    if not result:
        return "Authentication failed with an empty response"
    if "error_description" in result:
        return str(result["error_description"])
    if "error" in result:
        return str(result["error"])
    return "Authentication failed"
