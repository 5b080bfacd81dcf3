"""
Tests for store selection and the Supabase REST store.
"""

from datetime import timedelta
from unittest import mock

import pytest
import requests

from activation_server.config import Settings
from activation_server.errors import ConfigurationError, StoreError
from activation_server.store import SqlLicenseStore, SupabaseLicenseStore, create_store
from tests.conftest import T0

ROW = {
    "id": 7,
    "code": "TRIAL-XYZ",
    "is_used": True,
    "machine_id": "M1",
    "activated_at": "2026-10-19T12:00:00+00:00",
    "created_at": "2026-10-01T08:00:00Z",
    "is_trial": True,
    "trial_expires_at": "2026-10-19T12:10:00+00:00",
}


def _response(status_code=200, rows=None):
    r = mock.Mock()
    r.status_code = status_code
    r.json.return_value = rows if rows is not None else []
    r.text = "" if status_code < 400 else "boom"
    return r


@pytest.fixture
def supabase():
    return SupabaseLicenseStore("https://xyz.supabase.co/", "service-key", timeout=3)


class TestCreateStore:
    def test_database_url_wins(self):
        store = create_store(Settings(database_url="sqlite://", supabase_url="https://x", supabase_service_key="k"))
        try:
            assert isinstance(store, SqlLicenseStore)
        finally:
            store.close()

    def test_supabase(self):
        store = create_store(Settings(supabase_url="https://x.supabase.co", supabase_service_key="k"))

        assert isinstance(store, SupabaseLicenseStore)
        assert store.table_url == "https://x.supabase.co/rest/v1/license_codes"

    def test_nothing_configured(self):
        with pytest.raises(ConfigurationError):
            create_store(Settings())

    def test_supabase_needs_key(self):
        with pytest.raises(ConfigurationError):
            create_store(Settings(supabase_url="https://x.supabase.co"))


class TestSupabaseStore:
    def test_get_by_code(self, supabase):
        with mock.patch("activation_server.store.requests.get", return_value=_response(rows=[ROW])) as get:
            record = supabase.get_by_code("TRIAL-XYZ")

        get.assert_called_once()
        args, kwargs = get.call_args
        assert args[0] == "https://xyz.supabase.co/rest/v1/license_codes"
        assert kwargs["params"] == {"select": "*", "code": "eq.TRIAL-XYZ"}
        assert kwargs["headers"]["apikey"] == "service-key"
        assert kwargs["headers"]["Authorization"] == "Bearer service-key"
        assert kwargs["timeout"] == 3

        assert record.id == 7
        assert record.is_used is True
        assert record.activated_at == T0
        assert record.trial_expires_at == T0 + timedelta(minutes=10)

    def test_get_missing(self, supabase):
        with mock.patch("activation_server.store.requests.get", return_value=_response(rows=[])):
            assert supabase.get_by_code("NOPE") is None

    def test_claim_is_conditional(self, supabase):
        expires = T0 + timedelta(minutes=10)
        with mock.patch("activation_server.store.requests.patch", return_value=_response(rows=[ROW])) as patch:
            assert supabase.claim(7, "M1", T0, True, expires) is True

        kwargs = patch.call_args.kwargs
        assert kwargs["params"] == {"id": "eq.7", "is_used": "eq.false"}
        assert kwargs["headers"]["Prefer"] == "return=representation"
        assert kwargs["json"] == {
            "is_used": True,
            "machine_id": "M1",
            "activated_at": T0.isoformat(),
            "is_trial": True,
            "trial_expires_at": expires.isoformat(),
        }

    def test_claim_lost_race(self, supabase):
        with mock.patch("activation_server.store.requests.patch", return_value=_response(rows=[])):
            assert supabase.claim(7, "M2", T0, False, None) is False

    def test_add_code(self, supabase):
        row = dict(ROW, is_used=False, machine_id=None, activated_at=None, trial_expires_at=None)
        with mock.patch("activation_server.store.requests.post", return_value=_response(201, [row])) as post:
            record = supabase.add_code("TRIAL-XYZ", is_trial=True)

        assert post.call_args.kwargs["json"] == {"code": "TRIAL-XYZ", "is_used": False, "is_trial": True}
        assert record.code == "TRIAL-XYZ"
        assert record.is_used is False

    def test_add_existing_code(self, supabase):
        with mock.patch("activation_server.store.requests.post", return_value=_response(409)):
            assert supabase.add_code("TRIAL-XYZ") is None

    def test_http_error_is_store_error(self, supabase):
        with mock.patch("activation_server.store.requests.get", return_value=_response(503)):
            with pytest.raises(StoreError) as exc:
                supabase.get_by_code("ABC123")

        assert exc.value.status_code == 500
        assert "boom" not in exc.value.message

    def test_connection_error_is_store_error(self, supabase):
        with mock.patch("activation_server.store.requests.get", side_effect=requests.ConnectionError("down")):
            with pytest.raises(StoreError) as exc:
                supabase.get_by_code("ABC123")

        assert isinstance(exc.value.__cause__, requests.ConnectionError)

    def test_migrate_is_a_no_op(self, supabase):
        with mock.patch("activation_server.store.requests") as http:
            supabase.migrate()

        assert not http.method_calls

    def test_non_json_reply_is_store_error(self, supabase):
        r = _response(rows=[])
        r.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        with mock.patch("activation_server.store.requests.get", return_value=r):
            with pytest.raises(StoreError) as exc:
                supabase.get_by_code("ABC123")

        assert isinstance(exc.value.__cause__, ValueError)

    @pytest.mark.parametrize("rows", [
        [{"code": "ABC123"}],
        [{"id": 7, "code": "ABC123", "activated_at": "yesterday"}],
        {"message": "not a list"},
    ])
    def test_unreadable_rows_are_store_errors(self, supabase, rows):
        with mock.patch("activation_server.store.requests.get", return_value=_response(rows=rows)):
            with pytest.raises(StoreError):
                supabase.get_by_code("ABC123")

    def test_unreadable_claim_reply_is_store_error(self, supabase):
        r = _response(rows=[])
        r.json.side_effect = ValueError("no JSON")
        with mock.patch("activation_server.store.requests.patch", return_value=r):
            with pytest.raises(StoreError):
                supabase.claim(7, "M1", T0, False, None)
