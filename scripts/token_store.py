#!/usr/bin/env python3
"""OAuth token persistence for getgmail.

Tokens are kept in the OS keyring when one is usable, otherwise in a JSON
file readable only by the current user.
"""

from __future__ import annotations

import json
import logging
import os
import re
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TokenStoreError(RuntimeError):
    """Raised when token persistence fails."""


class TokenStore:
    def __init__(
        self,
        profile: str,
        service_name: str = "getgmail",
        base_dir: Optional[Path] = None,
        prefer_keyring: bool = True,
        require_keyring: bool = False,
    ) -> None:
        self.profile = sanitize_profile(profile)
        self.service_name = service_name
        self.base_dir = base_dir or default_token_dir()
        self.require_keyring = require_keyring
        self._keyring = _load_keyring() if prefer_keyring else None

        if require_keyring and self._keyring is None:
            raise TokenStoreError(
                "GMAIL_TOKEN_STORE=keyring requested but no keyring backend is available. "
                "Install 'keyring' with an OS keychain backend, or set GMAIL_TOKEN_STORE=file."
            )

    @property
    def token_file(self) -> Path:
        return self.base_dir / f"{self.profile}.json"

    def backend_name(self) -> str:
        return "keyring" if self._keyring is not None else "file"

    def load(self) -> Optional[Dict[str, Any]]:
        if self._keyring is not None:
            try:
                raw = self._keyring.get_password(self.service_name, self.profile)
            except Exception:
                # Keyring backends raise their own error types; fall back to the file.
                raw = None
            token = _decode_token(raw)
            if token is not None:
                return token

        if not self.token_file.exists():
            return None
        payload = _decode_token(self.token_file.read_text(encoding="utf-8"))
        if payload is None:
            return None
        token = payload.get("token")
        return token if isinstance(token, dict) else None

    def save(self, token: Dict[str, Any]) -> str:
        serialized = json.dumps(token, separators=(",", ":"), sort_keys=True)
        if self._keyring is not None:
            try:
                self._keyring.set_password(self.service_name, self.profile, serialized)
                return "keyring"
            except Exception as err:
                if self.require_keyring:
                    raise TokenStoreError(f"Failed to write token to keyring backend: {err}") from err

        self._write_file({
            "profile": self.profile,
            "saved_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
            "token": token,
        })
        return "file"

    def delete(self) -> None:
        if self._keyring is not None:
            try:
                self._keyring.delete_password(self.service_name, self.profile)
            except Exception as err:
                logger.debug("No keyring entry removed for %s: %s", self.profile, err)
        if self.token_file.exists():
            self.token_file.unlink()

    def _write_file(self, payload: Dict[str, Any]) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.base_dir.chmod(0o700)
        except OSError:
            pass

        tmp_path = self.token_file.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        try:
            tmp_path.chmod(0o600)
        except OSError:
            pass
        tmp_path.replace(self.token_file)

        mode = stat.S_IMODE(self.token_file.stat().st_mode)
        if mode & 0o077:
            self.token_file.chmod(0o600)


def default_token_dir() -> Path:
    override = os.environ.get("GMAIL_TOKEN_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".getgmail" / "tokens"


def sanitize_profile(profile: Optional[str]) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", (profile or "").strip()).strip("._")
    return cleaned or "default"


def _decode_token(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw or not raw.strip():
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _load_keyring():
    try:
        import keyring  # type: ignore
    except ImportError:
        return None

    try:
        backend = keyring.get_keyring()
    except Exception:
        return None

    # keyring.backends.fail.Keyring means no usable backend.
    if backend is None or "fail" in type(backend).__module__.lower():
        return None
    return keyring
