"""Tests for bearer-token identity resolution."""
import time

import pytest
from jose import jwt

from conftest import TEST_SECRET

from app.auth.identity import IdentityResolver, get_identity_resolver
from app.config import AppConfig, JWTSecrets, Secrets, set_config
from app.realtime.errors import AuthenticationError


class TestIdentityResolver:
    def test_issued_token_resolves(self, resolver):
        identity = resolver.resolve(resolver.issue_token("alice", "Alice Liddell"))

        assert identity.userId == "alice"
        assert identity.userName == "Alice Liddell"

    def test_name_defaults_to_user_id(self, resolver):
        assert resolver.resolve(resolver.issue_token("bob")).userName == "bob"

    def test_legacy_user_id_claim(self, resolver):
        token = jwt.encode({"userId": "carol", "name": "Carol"}, TEST_SECRET, algorithm="HS256")

        assert resolver.resolve(token).userId == "carol"

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_missing_or_malformed(self, resolver, token):
        with pytest.raises(AuthenticationError):
            resolver.resolve(token)

    def test_expired_token(self, resolver):
        token = resolver.issue_token("alice", expires_in_seconds=-60)

        with pytest.raises(AuthenticationError, match="Invalid token"):
            resolver.resolve(token)

    def test_wrong_signature(self, resolver):
        forged = IdentityResolver("some-other-secret").issue_token("alice")

        with pytest.raises(AuthenticationError):
            resolver.resolve(forged)

    def test_token_without_subject(self, resolver):
        token = jwt.encode({"name": "Nobody", "exp": int(time.time()) + 60}, TEST_SECRET, algorithm="HS256")

        with pytest.raises(AuthenticationError, match="no subject"):
            resolver.resolve(token)

    def test_authentication_error_maps_to_401(self):
        error = AuthenticationError()

        assert error.status_code == 401
        assert error.code == "unauthenticated"


def test_resolver_uses_configured_secret():
    set_config(AppConfig(secrets=Secrets(jwt=JWTSecrets(secret_key="configured"))))

    resolver = get_identity_resolver()

    token = IdentityResolver("configured").issue_token("alice")
    assert resolver.resolve(token).userId == "alice"
