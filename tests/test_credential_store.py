# tests/test_credential_store.py
"""Unit tests for per-branch credential storage."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from datetime import datetime
from unittest.mock import MagicMock
from app.exceptions import CredentialValidationError, MissingCredentialsError
from app.models.event_offset import EventOffset
from app.services.credential_store import (
    get_credential, list_active_credentials, require_active_credential, set_active, upsert_credential,
)
from app.utils.secrets import mask_secret


class TestCredentialStore:
    def test_upsert_creates_and_strips(self, db):
        tokens = MagicMock()
        cred = upsert_credential(db, "BR-1", " https://api.example.com/ ", " key ", " secret-value ",
                                 tokens=tokens)

        assert cred.api_base_url == "https://api.example.com"
        assert cred.app_key == "key"
        assert cred.app_secret == "secret-value"
        assert cred.is_active is True
        tokens.invalidate.assert_called_once_with("BR-1")

    def test_upsert_replaces_existing_row(self, db):
        tokens = MagicMock()
        upsert_credential(db, "BR-1", "https://a.example.com", "k1", "s1", tokens=tokens)
        upsert_credential(db, "BR-1", "https://b.example.com", "k2", "s2", tokens=tokens)

        cred = get_credential(db, "BR-1")
        assert cred.api_base_url == "https://b.example.com"
        assert cred.app_key == "k2"
        assert tokens.invalidate.call_count == 2

    def test_new_account_drops_subscription_and_offset(self, db):
        upsert_credential(db, "BR-1", "https://a.example.com", "k1", "s1", tokens=MagicMock())
        cred = get_credential(db, "BR-1")
        cred.subscription_id = "SUB-OLD"
        db.add(EventOffset(branch_id="BR-1", subscription_id="SUB-OLD", last_offset=40,
                           updated_at=datetime.utcnow()))
        db.commit()

        cred = upsert_credential(db, "BR-1", "https://b.example.com", "k2", "s2", tokens=MagicMock())

        assert cred.subscription_id is None
        assert db.query(EventOffset).filter(EventOffset.branch_id == "BR-1").count() == 0

    def test_secret_rotation_keeps_subscription(self, db):
        upsert_credential(db, "BR-1", "https://a.example.com", "k1", "s1", tokens=MagicMock())
        cred = get_credential(db, "BR-1")
        cred.subscription_id = "SUB-1"
        db.add(EventOffset(branch_id="BR-1", subscription_id="SUB-1", last_offset=40,
                           updated_at=datetime.utcnow()))
        db.commit()

        cred = upsert_credential(db, "BR-1", "https://a.example.com", "k1", "s2-rotated", tokens=MagicMock())

        assert cred.subscription_id == "SUB-1"
        assert db.query(EventOffset).one().last_offset == 40

    def test_empty_fields_rejected(self, db):
        with pytest.raises(CredentialValidationError) as exc:
            upsert_credential(db, "BR-1", "https://a.example.com", "", "   ", tokens=MagicMock())

        assert exc.value.fields == ["app_key", "app_secret"]
        assert get_credential(db, "BR-1") is None

    def test_missing_credentials(self, db):
        with pytest.raises(MissingCredentialsError) as exc:
            require_active_credential(db, "NOPE")
        assert exc.value.reason == "missing credentials"

    def test_inactive_credentials(self, db):
        upsert_credential(db, "BR-1", "https://a.example.com", "k", "s", is_active=False, tokens=MagicMock())

        with pytest.raises(MissingCredentialsError) as exc:
            require_active_credential(db, "BR-1")
        assert exc.value.reason == "credentials inactive"

    def test_set_active_toggles_and_lists(self, db):
        tokens = MagicMock()
        upsert_credential(db, "BR-1", "https://a.example.com", "k", "s", tokens=tokens)
        upsert_credential(db, "BR-2", "https://b.example.com", "k", "s", tokens=tokens)

        set_active(db, "BR-2", False, tokens=tokens)

        assert [c.branch_id for c in list_active_credentials(db)] == ["BR-1"]

    def test_secret_not_in_repr(self, db):
        cred = upsert_credential(db, "BR-1", "https://a.example.com", "k", "super-secret", tokens=MagicMock())
        assert "super-secret" not in repr(cred)


class TestMaskSecret:
    def test_long_secret_keeps_prefix(self):
        assert mask_secret("abcdefghijkl") == "abcd********"

    def test_short_secret_fully_masked(self):
        assert mask_secret("abc") == "***"

    def test_empty(self):
        assert mask_secret(None) == ""
