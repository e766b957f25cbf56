#tests\test_tokens.py

"""Capability token issuance and validation."""

import pytest

from deploy_engine.core.errors import TokenIssuanceError
from deploy_engine.infrastructure.memory.tokens import InMemoryTokenStore
from deploy_engine.orchestrator.tokens import DEFAULT_PERMISSIONS, CapabilityTokens


class BrokenStore(InMemoryTokenStore):
    def get(self, app_name, source_id):
        raise RuntimeError("database is locked")


@pytest.fixture
def tokens():
    return CapabilityTokens(InMemoryTokenStore())


class TestIssue:
    def test_first_install_gets_new_token(self, tokens):
        token = tokens.issue("blog", "blog-1")

        assert len(token.token) == 64
        assert token.permissions == list(DEFAULT_PERMISSIONS)
        assert token.has_permission("update-self")

    def test_existing_token_is_reused(self, tokens):
        first = tokens.issue("blog", "blog-1")

        assert tokens.issue("blog", "blog-1").token == first.token
        assert tokens.issue("blog", "blog-1", already_installed=True).token == first.token

    def test_tokens_are_per_source(self, tokens):
        assert tokens.issue("blog", "blog-1").token != tokens.issue("blog", "blog-2").token

    def test_reinstall_without_stored_token_gets_none(self, tokens):
        assert tokens.issue("blog", "blog-1", already_installed=True) is None

    def test_store_failure_is_wrapped(self):
        with pytest.raises(TokenIssuanceError):
            CapabilityTokens(BrokenStore()).issue("blog", "blog-1")


class TestValidate:
    def test_valid_token_updates_last_used(self, tokens):
        issued = tokens.issue("blog", "blog-1")

        found = tokens.validate(issued.token)

        assert found.app_name == "blog"
        assert found.last_used is not None
        assert tokens.issue("blog", "blog-1").last_used == found.last_used

    @pytest.mark.parametrize("value", ["", None, "deadbeef"])
    def test_unknown_token(self, tokens, value):
        assert tokens.validate(value) is None

    def test_revoke(self, tokens):
        issued = tokens.issue("blog", "blog-1")

        assert tokens.revoke("blog", "blog-1")
        assert not tokens.revoke("blog", "blog-1")
        assert tokens.validate(issued.token) is None
