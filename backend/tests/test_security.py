"""Security tests: Clerk session verification and admin access"""
import json
import time
from unittest.mock import patch

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from conftest import CLERK_SECRET_KEY, auth_header, make_session_token
from mindsync.core import security
from mindsync.core.security import is_admin, set_jwks_provider_for_tests, verify_clerk_token


@pytest.fixture
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def public_jwk(rsa_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk["kid"] = "test-kid"
    return jwk


@pytest.fixture
def jwks(public_jwk):
    """Serve a one-key JWKS and switch verification to RS256"""
    set_jwks_provider_for_tests(lambda url: {"keys": [public_jwk]})
    with patch.object(security.settings, "CLERK_SECRET_KEY", ""), \
            patch.object(security.settings, "CLERK_JWKS_URL", "https://clerk.example.com/.well-known/jwks.json"), \
            patch.object(security.settings, "CLERK_ISSUER", ""), \
            patch.object(security.settings, "CLERK_AUDIENCE", ""):
        yield
    set_jwks_provider_for_tests(None)


@pytest.fixture
def production_jwks(public_jwk):
    """Production settings with CLERK_SECRET_KEY still present"""
    set_jwks_provider_for_tests(lambda url: {"keys": [public_jwk]})
    with patch.object(security.settings, "ENVIRONMENT", "production"), \
            patch.object(security.settings, "CLERK_JWKS_URL", "https://clerk.example.com/.well-known/jwks.json"), \
            patch.object(security.settings, "CLERK_ISSUER", ""), \
            patch.object(security.settings, "CLERK_AUDIENCE", ""):
        yield
    set_jwks_provider_for_tests(None)


@pytest.mark.critical
class TestSessionAuth:
    """Test bearer token handling on protected routes"""

    def test_missing_bearer_rejected(self, client):
        response = client.get("/api/subscription/get-status")
        assert response.status_code == 401
        assert response.json()["error"] == "Not authorized. Please sign in."

    def test_wrong_signature_rejected(self, client):
        now = int(time.time())
        token = jwt.encode({"sub": "user_test123", "exp": now + 60}, "not-the-clerk-secret-but-long-enough", algorithm="HS256")
        response = client.get("/api/subscription/get-status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_expired_token_rejected(self, client):
        token = make_session_token("user_test123", expires_in=-60)
        response = client.get("/api/subscription/get-status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"] == "Session expired. Please sign in again."

    def test_token_without_subject_rejected(self, client):
        now = int(time.time())
        token = jwt.encode({"exp": now + 60}, CLERK_SECRET_KEY, algorithm="HS256")
        response = client.get("/api/subscription/get-status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_valid_token_accepted(self, client, test_user):
        response = client.get("/api/subscription/get-status", headers=auth_header(test_user.clerk_id))
        assert response.status_code == 200


@pytest.mark.high
class TestJwksVerification:
    """Test RS256 verification against Clerk's JWKS"""

    def test_rs256_token_verified(self, rsa_key, jwks):
        token = jwt.encode(
            {"sub": "user_rs256", "exp": int(time.time()) + 60},
            rsa_key,
            algorithm="RS256",
            headers={"kid": "test-kid"}
        )
        assert verify_clerk_token(token)["sub"] == "user_rs256"

    def test_unknown_kid_rejected(self, rsa_key, jwks):
        token = jwt.encode(
            {"sub": "user_rs256", "exp": int(time.time()) + 60},
            rsa_key,
            algorithm="RS256",
            headers={"kid": "rotated-away"}
        )
        with pytest.raises(jwt.InvalidTokenError):
            verify_clerk_token(token)

    def test_foreign_key_rejected(self, jwks):
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        token = jwt.encode(
            {"sub": "user_rs256", "exp": int(time.time()) + 60},
            other_key,
            algorithm="RS256",
            headers={"kid": "test-kid"}
        )
        with pytest.raises(jwt.InvalidTokenError):
            verify_clerk_token(token)


    def test_production_ignores_shared_secret(self, rsa_key, production_jwks):
        token = jwt.encode(
            {"sub": "user_rs256", "exp": int(time.time()) + 60},
            rsa_key,
            algorithm="RS256",
            headers={"kid": "test-kid"}
        )
        assert verify_clerk_token(token)["sub"] == "user_rs256"

    def test_production_rejects_hs256_token(self, production_jwks):
        with pytest.raises(jwt.InvalidTokenError):
            verify_clerk_token(make_session_token("user_test123"))

@pytest.mark.high
class TestAdminAccess:
    """Test admin allowlist"""

    def test_is_admin(self):
        assert is_admin("user_admin") is True
        assert is_admin("user_test123") is False
        assert is_admin(None) is False

    def test_non_admin_forbidden(self, client, user_headers):
        response = client.get("/api/admin/deleted-users", headers=user_headers)
        assert response.status_code == 403

    def test_admin_allowed(self, client, admin_headers):
        response = client.get("/api/admin/deleted-users", headers=admin_headers)
        assert response.status_code == 200


@pytest.mark.medium
class TestServiceEndpoints:
    """Test unauthenticated service endpoints"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200

    def test_metrics_exposed(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "mindsync_webhook_events" in response.text
