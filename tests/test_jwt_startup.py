"""
tests/test_jwt_startup — JWT Secret Validation & Bearer Decoding
=================================================================
The API must refuse to start when JWT_SECRET is missing, blank, too short
or a known weak default, and must tell service callers from admins.
"""

from __future__ import annotations

import importlib
import os
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException

import sweets.api.deps as deps_mod


def _reload_secret() -> str:
    importlib.reload(deps_mod)
    return deps_mod.JWT_SECRET


@pytest.fixture(autouse=True)
def _restore_jwt_secret():
    """Put JWT_SECRET back and re-import so later tests see a valid module."""
    original = os.environ.get("JWT_SECRET")
    yield
    if original is not None:
        os.environ["JWT_SECRET"] = original
    else:
        os.environ.pop("JWT_SECRET", None)
    try:
        importlib.reload(deps_mod)
    except RuntimeError:
        pass  # test env may not have a valid secret set yet


class TestSecretValidation:
    def test_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                _reload_secret()

    @pytest.mark.parametrize("weak", ["sweets-dev-secret-change-me", "change-me", "secret"])
    def test_weak_defaults(self, weak):
        with patch.dict(os.environ, {"JWT_SECRET": weak}):
            with pytest.raises(RuntimeError, match="known weak default"):
                _reload_secret()

    def test_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "x" * 31}):
            with pytest.raises(RuntimeError, match="too short"):
                _reload_secret()

    def test_strong_secret_accepted(self):
        good = "s" * 48
        with patch.dict(os.environ, {"JWT_SECRET": good}):
            assert _reload_secret() == good


class TestBearerClaims:
    def _bearer(self, claims: dict) -> str:
        token = jwt.encode(claims, deps_mod.JWT_SECRET, algorithm=deps_mod.JWT_ALGORITHM)
        return f"Bearer {token}"

    def test_service_claim_passes_service_guard(self):
        payload = deps_mod.get_current_service(self._bearer({"sub": "forum", "is_service": True}))
        assert payload["sub"] == "forum"

    def test_admin_implies_service(self):
        payload = deps_mod.get_current_service(self._bearer({"sub": "1", "is_admin": True}))
        assert payload["is_admin"] is True

    def test_service_is_not_admin(self):
        with pytest.raises(HTTPException) as exc_info:
            deps_mod.get_current_admin(self._bearer({"sub": "forum", "is_service": True}))
        assert exc_info.value.status_code == 403

    def test_missing_header(self):
        with pytest.raises(HTTPException) as exc_info:
            deps_mod.get_current_service(None)
        assert exc_info.value.status_code == 401

    def test_wrong_signature(self):
        token = jwt.encode({"sub": "x", "is_admin": True}, "z" * 40, algorithm="HS256")
        with pytest.raises(HTTPException) as exc_info:
            deps_mod.get_current_admin(f"Bearer {token}")
        assert exc_info.value.status_code == 401
