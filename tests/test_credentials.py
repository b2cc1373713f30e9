"""Tests for organization API credentials."""

import pytest

from ticketgate.service.credentials import CredentialService
from ticketgate.service.errors import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from ticketgate.service.tokens import hash_token

ORG = "org-1"


@pytest.fixture
def credentials(memory_store, clock):
    return CredentialService(memory_store, clock=clock)


class TestCreate:
    def test_secret_returned_once_and_hashed(self, credentials, memory_store):
        issued = credentials.create(ORG, "ci bot")

        stored = memory_store.get_credential(issued.credential.id)
        assert stored.secret_hash == hash_token(issued.secret)
        assert issued.secret not in vars(stored).values()
        assert stored.name == "ci bot"
        assert stored.last_used is None

    @pytest.mark.parametrize("name", ["", "   ", "x" * 65])
    def test_rejects_bad_names(self, credentials, name):
        with pytest.raises(ValidationError):
            credentials.create(ORG, name)


class TestValidate:
    def test_valid_secret(self, credentials):
        issued = credentials.create(ORG, "deploy")
        found = credentials.validate(issued.secret, ORG)
        assert found is not None
        assert found.id == issued.credential.id

    def test_other_organization_rejected(self, credentials):
        issued = credentials.create(ORG, "deploy")
        assert credentials.validate(issued.secret, "org-2") is None

    def test_unknown_or_missing_inputs(self, credentials):
        issued = credentials.create(ORG, "deploy")
        assert credentials.validate("nope", ORG) is None
        assert credentials.validate(None, ORG) is None
        assert credentials.validate(issued.secret, None) is None

    def test_revoked_rejected(self, credentials):
        issued = credentials.create(ORG, "deploy")
        credentials.revoke(issued.credential.id)
        assert credentials.validate(issued.secret, ORG) is None


class TestTouchAndRevoke:
    def test_touch_sets_last_used(self, credentials, memory_store, clock):
        issued = credentials.create(ORG, "deploy")
        clock.advance(minutes=3)

        credentials.touch_last_used(issued.credential.id)

        assert memory_store.get_credential(issued.credential.id).last_used == clock.now

    def test_touch_revoked_raises(self, credentials):
        issued = credentials.create(ORG, "deploy")
        credentials.revoke(issued.credential.id)
        with pytest.raises(AuthenticationError):
            credentials.touch_last_used(issued.credential.id)

    def test_revoke_scoped_to_organization(self, credentials):
        issued = credentials.create(ORG, "deploy")
        with pytest.raises(NotFoundError):
            credentials.revoke(issued.credential.id, organization_id="org-2")
        revoked = credentials.revoke(issued.credential.id, organization_id=ORG)
        assert revoked.revoked_at is not None

    def test_revoke_is_idempotent(self, credentials):
        issued = credentials.create(ORG, "deploy")
        first = credentials.revoke(issued.credential.id)
        second = credentials.revoke(issued.credential.id)
        assert first.revoked_at == second.revoked_at

    def test_revoke_unknown(self, credentials):
        with pytest.raises(NotFoundError):
            credentials.revoke("missing")

    def test_list_by_organization(self, credentials):
        credentials.create(ORG, "a")
        credentials.create(ORG, "b")
        credentials.create("org-2", "c")
        names = sorted(c.name for c in credentials.list(ORG))
        assert names == ["a", "b"]
