import json
import time
from pathlib import Path

import pytest
import requests

from quillsync.core.errors import AuthExpired
from quillsync.providers.google_drive import auth as auth_module
from quillsync.providers.google_drive.auth import GoogleAuth


class _FakeTokenResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def _auth(tmp_path: Path, client_id: str = "cid") -> GoogleAuth:
    return GoogleAuth(client_id=client_id, client_secret="secret", token_file=str(tmp_path / "tokens.json"))


def _write_tokens(tmp_path: Path, **tokens):
    (tmp_path / "tokens.json").write_text(json.dumps(tokens), encoding="utf-8")


def test_signed_out_without_token_file(tmp_path: Path):
    auth = _auth(tmp_path)

    assert auth.is_signed_in() is False
    with pytest.raises(AuthExpired):
        auth.ensure_valid_token()


def test_import_tokens_and_sign_out(tmp_path: Path):
    auth = _auth(tmp_path)

    auth.import_tokens(access_token="at", refresh_token="rt", expires_in=3600)

    assert auth.is_signed_in() is True
    assert auth.ensure_valid_token() == "at"

    auth.sign_out()
    assert auth.is_signed_in() is False
    with pytest.raises(ValueError):
        auth.import_tokens()


def test_expired_access_token_is_refreshed(monkeypatch, tmp_path: Path):
    _write_tokens(tmp_path, access_token="old", refresh_token="rt", expires_in=3600, created_at=1)
    posted = {}

    def fake_post(url, data=None, timeout=None):
        posted.update(url=url, data=data)
        return _FakeTokenResponse(200, {"access_token": "new", "expires_in": 3600})

    monkeypatch.setattr(auth_module.requests, "post", fake_post)
    auth = _auth(tmp_path)

    assert auth.ensure_valid_token() == "new"
    assert posted["url"] == auth_module.TOKEN_URL
    assert posted["data"]["grant_type"] == "refresh_token"
    saved = json.loads((tmp_path / "tokens.json").read_text(encoding="utf-8"))
    assert saved["refresh_token"] == "rt"
    assert saved["created_at"] > 1


def test_token_near_expiry_is_refreshed(monkeypatch, tmp_path: Path):
    almost_expired = int(time.time() * 1000) - 3500 * 1000
    _write_tokens(tmp_path, access_token="old", refresh_token="rt", expires_in=3600, created_at=almost_expired)
    monkeypatch.setattr(
        auth_module.requests,
        "post",
        lambda *_a, **_kw: _FakeTokenResponse(200, {"access_token": "new"}),
    )

    assert _auth(tmp_path).ensure_valid_token() == "new"


def test_refresh_rejection_raises_auth_expired(monkeypatch, tmp_path: Path):
    _write_tokens(tmp_path, access_token="old", refresh_token="rt", created_at=1)
    monkeypatch.setattr(
        auth_module.requests,
        "post",
        lambda *_a, **_kw: _FakeTokenResponse(400, {"error": "invalid_grant"}),
    )

    with pytest.raises(AuthExpired) as exc:
        _auth(tmp_path).ensure_valid_token()
    assert "invalid_grant" in str(exc.value)


def test_refresh_transport_failure_raises_auth_expired(monkeypatch, tmp_path: Path):
    _write_tokens(tmp_path, refresh_token="rt")

    def boom(*_a, **_kw):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(auth_module.requests, "post", boom)

    with pytest.raises(AuthExpired):
        _auth(tmp_path).ensure_valid_token(force_refresh=True)


def test_refresh_needs_a_client_id(tmp_path: Path):
    _write_tokens(tmp_path, refresh_token="rt")
    auth = GoogleAuth(
        client_id="",
        client_secret="",
        token_file=str(tmp_path / "tokens.json"),
        client_id_fallback=lambda: None,
    )

    assert auth.is_signed_in() is True
    with pytest.raises(AuthExpired):
        auth.ensure_valid_token()
