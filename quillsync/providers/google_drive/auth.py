import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

import requests

from quillsync.core.errors import AuthExpired

TOKEN_URL = "https://oauth2.googleapis.com/token"
# Refresh this long before the access token actually expires.
EXPIRY_MARGIN_SEC = 300

logger = logging.getLogger("quillsync.auth")


class GoogleAuth:
    """OAuth token holder backed by a JSON token file.

    The sync engine only needs two things from it: ``is_signed_in()`` as a gate
    and ``ensure_valid_token()`` to obtain a usable bearer token.
    """

    def __init__(self, client_id: str, client_secret: str, token_file: str, timeout: int = 30,
                 client_id_fallback: Callable[[], str | None] | None = None):
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.token_file = token_file or ""
        self.timeout = timeout
        self.client_id_fallback = client_id_fallback

    def _resolved_client_id(self) -> str:
        if self.client_id:
            return self.client_id
        if self.client_id_fallback is not None:
            return self.client_id_fallback() or ""
        return ""

    def _load_tokens(self) -> dict[str, Any] | None:
        if not self.token_file:
            return None
        p = Path(self.token_file)
        if not p.exists():
            return None
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("token_file_unreadable %s: %s", self.token_file, e)
            return None
        if isinstance(payload, dict):
            return payload
        return None

    def _save_tokens(self, data: dict[str, Any]) -> None:
        if not self.token_file:
            return
        p = Path(self.token_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    @staticmethod
    def _access_token_fresh(tokens: dict[str, Any]) -> bool:
        access_token = tokens.get("access_token")
        created = int(tokens.get("created_at", 0))
        expires_in = int(tokens.get("expires_in", 3600))
        expire_at = created + max(expires_in - EXPIRY_MARGIN_SEC, EXPIRY_MARGIN_SEC) * 1000
        return bool(access_token) and bool(created) and int(time.time() * 1000) < expire_at

    def is_signed_in(self) -> bool:
        tokens = self._load_tokens()
        if not tokens:
            return False
        return bool(tokens.get("refresh_token")) or self._access_token_fresh(tokens)

    def import_tokens(self, access_token: str = "", refresh_token: str = "", expires_in: int = 3600) -> None:
        if not access_token and not refresh_token:
            raise ValueError("token_missing")
        self._save_tokens(
            {
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_in": int(expires_in),
                "created_at": int(time.time() * 1000) if access_token else 0,
            }
        )

    def sign_out(self) -> None:
        if self.token_file:
            Path(self.token_file).unlink(missing_ok=True)

    def _refresh(self, tokens: dict[str, Any]) -> dict[str, Any]:
        refresh = (tokens.get("refresh_token") or "").strip()
        client_id = self._resolved_client_id()
        if not refresh or not client_id:
            raise AuthExpired("refresh_token_missing_or_client_id_missing")

        try:
            res = requests.post(
                TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh,
                    "client_id": client_id,
                    "client_secret": self.client_secret,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            # A refresh that cannot reach the endpoint leaves the user signed in but unusable.
            raise AuthExpired(f"refresh_token_request_failed: {e}") from e

        try:
            payload_raw = res.json()
        except ValueError:
            payload_raw = {}
        payload = payload_raw if isinstance(payload_raw, dict) else {}
        if res.status_code >= 400 or not payload.get("access_token"):
            raise AuthExpired(f"refresh_token_failed: {payload.get('error') or res.status_code}")

        refreshed = dict(tokens)
        refreshed.update(payload)
        # Google omits refresh_token on refresh responses; keep the one we have.
        refreshed["refresh_token"] = payload.get("refresh_token") or refresh
        refreshed["created_at"] = int(time.time() * 1000)
        self._save_tokens(refreshed)
        logger.info("access_token_refreshed")
        return refreshed

    def ensure_valid_token(self, force_refresh: bool = False) -> str:
        tokens = self._load_tokens()
        if not tokens:
            raise AuthExpired("not_signed_in")
        if not force_refresh and self._access_token_fresh(tokens):
            return tokens["access_token"]
        return self._refresh(tokens)["access_token"]
