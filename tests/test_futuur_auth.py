"""Tests for futuur_auth - credential store, endpoint classification and HMAC signing."""

import hashlib
import hmac
from unittest.mock import patch

import pytest

from futuur_auth import (
    DEFAULT_PUBLIC_PREFIXES,
    ConfigError,
    CredentialStore,
    Credentials,
    EndpointClass,
    canonical_string,
    classify,
    parse_prefixes,
    render_scalar,
    sign,
)

CREDS = Credentials(public_key="PK1", private_key="SECRET")
NOW = 1700000000


def _expected_hmac(message: str, secret: str = "SECRET") -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha512).hexdigest()


class TestSign:
    def test_matches_manual_computation(self):
        headers = sign({"outcome": 123, "amount": 100}, CREDS, now=NOW)
        expected = _expected_hmac("Key=PK1&Timestamp=1700000000&amount=100&outcome=123")
        assert headers == {"Key": "PK1", "Timestamp": "1700000000", "HMAC": expected}

    def test_deterministic(self):
        payload = {"outcome": 123, "amount": 100}
        assert sign(payload, CREDS, now=NOW) == sign(payload, CREDS, now=NOW)

    def test_hex_digest_shape(self):
        digest = sign({"outcome": 123}, CREDS, now=NOW)["HMAC"]
        assert len(digest) == 128
        assert digest == digest.lower()
        int(digest, 16)

    def test_order_independent(self):
        a = sign({"a": 1, "b": 2, "c": "x"}, CREDS, now=NOW)
        b = sign({"c": "x", "b": 2, "a": 1}, CREDS, now=NOW)
        assert a == b

    def test_timestamp_floored(self):
        headers = sign({}, CREDS, now=1700000000.999)
        assert headers["Timestamp"] == "1700000000"
        assert headers == sign({}, CREDS, now=NOW)

    @patch("futuur_auth.time")
    def test_defaults_to_current_time(self, mock_time):
        mock_time.time.return_value = 1700000042.5
        headers = sign({"outcome": 5}, CREDS)
        assert headers["Timestamp"] == "1700000042"
        assert headers == sign({"outcome": 5}, CREDS, now=1700000042)

    def test_injected_key_and_timestamp_win(self):
        headers = sign({"Key": "attacker", "Timestamp": 1, "outcome": 5}, CREDS, now=NOW)
        assert headers["Key"] == "PK1"
        assert headers["HMAC"] == _expected_hmac("Key=PK1&Timestamp=1700000000&outcome=5")
        assert headers == sign({"outcome": 5}, CREDS, now=NOW)

    def test_different_payload_changes_sig(self):
        assert sign({"amount": 100}, CREDS, now=NOW)["HMAC"] != sign({"amount": 101}, CREDS, now=NOW)["HMAC"]

    def test_different_secret_changes_sig(self):
        other = Credentials(public_key="PK1", private_key="OTHER")
        assert sign({"amount": 1}, CREDS, now=NOW)["HMAC"] != sign({"amount": 1}, other, now=NOW)["HMAC"]

    def test_form_encoding_uses_plus_for_space(self):
        message = canonical_string({"search": "us election & more"}, "PK1", NOW)
        assert message == "Key=PK1&Timestamp=1700000000&search=us+election+%26+more"

    def test_form_encoding_escapes_tilde_not_asterisk(self):
        message = canonical_string({"search": "a~b*c"}, "PK1", NOW)
        assert message == "Key=PK1&Timestamp=1700000000&search=a%7Eb*c"

    def test_uppercase_keys_sort_before_lowercase(self):
        message = canonical_string({"zeta": 1, "Alpha": 2, "beta": 3}, "PK1", NOW)
        assert message == "Alpha=2&Key=PK1&Timestamp=1700000000&beta=3&zeta=1"

    def test_repeated_pairs_keep_their_order(self):
        message = canonical_string([("categories", 9), ("limit", 10), ("categories", 2)], "PK1", NOW)
        assert message == "Key=PK1&Timestamp=1700000000&categories=9&categories=2&limit=10"

    def test_booleans_and_integral_floats(self):
        message = canonical_string({"live": True, "amount": 100.0, "price": 0.5}, "PK1", NOW)
        assert message == "Key=PK1&Timestamp=1700000000&amount=100&live=true&price=0.5"

    def test_nested_values_rejected(self):
        with pytest.raises(TypeError):
            sign({"outcomes": [1, 2]}, CREDS, now=NOW)
        with pytest.raises(TypeError):
            sign({"order": {"a": 1}}, CREDS, now=NOW)

    def test_incomplete_credentials_rejected(self):
        with pytest.raises(ConfigError):
            sign({"a": 1}, Credentials(public_key="PK1", private_key=""), now=NOW)

    def test_does_not_mutate_payload(self):
        payload = {"Key": "attacker", "outcome": 5}
        sign(payload, CREDS, now=NOW)
        assert payload == {"Key": "attacker", "outcome": 5}


class TestRenderScalar:
    def test_values(self):
        assert render_scalar(False) == "false"
        assert render_scalar(7) == "7"
        assert render_scalar(2.0) == "2"
        assert render_scalar(2.25) == "2.25"
        assert render_scalar("OOM") == "OOM"

    def test_none_rejected(self):
        with pytest.raises(TypeError):
            render_scalar(None)


class TestClassify:
    PREFIXES = {"events", "categories"}

    @pytest.mark.parametrize("endpoint", ["categories/5/", "events/", "/categories/featured/", "v2/events/12/"])
    def test_public(self, endpoint):
        assert classify(endpoint, self.PREFIXES) is EndpointClass.PUBLIC

    @pytest.mark.parametrize("endpoint", ["bets/", "wagers/1/", "me/", "bets/rates/", ""])
    def test_authenticated(self, endpoint):
        assert classify(endpoint, self.PREFIXES) is EndpointClass.AUTHENTICATED

    def test_empty_prefix_does_not_open_everything(self):
        assert classify("bets/", {"", "/"}) is EndpointClass.AUTHENTICATED

    def test_default_prefixes(self):
        assert classify("questions/") is EndpointClass.PUBLIC
        assert classify("categories/root/") is EndpointClass.PUBLIC
        assert classify("me/") is EndpointClass.AUTHENTICATED
        assert classify("bets/simulate_purchase/") is EndpointClass.AUTHENTICATED

    def test_idempotent(self):
        assert classify("bets/", self.PREFIXES) is classify("bets/", self.PREFIXES)


class TestParsePrefixes:
    def test_defaults(self):
        assert parse_prefixes(None) == DEFAULT_PUBLIC_PREFIXES
        assert parse_prefixes("  ") == DEFAULT_PUBLIC_PREFIXES

    def test_custom(self):
        assert parse_prefixes("events, /markets/ ,,") == ("events", "markets")


class TestCredentialStore:
    def test_load_from_environ(self):
        store = CredentialStore(environ={"FUTUUR_PUBLIC_KEY": "PK1", "FUTUUR_PRIVATE_KEY": "SECRET"})
        assert store.load() == CREDS
        assert store.is_configured()

    @pytest.mark.parametrize("environ", [
        {},
        {"FUTUUR_PUBLIC_KEY": "PK1"},
        {"FUTUUR_PRIVATE_KEY": "SECRET"},
        {"FUTUUR_PUBLIC_KEY": "", "FUTUUR_PRIVATE_KEY": "SECRET"},
    ])
    def test_missing_credentials(self, environ):
        store = CredentialStore(environ=environ)
        with pytest.raises(ConfigError, match="missing credentials"):
            store.load()
        assert not store.is_configured()

    def test_sees_values_set_after_creation(self):
        environ = {}
        store = CredentialStore(environ=environ)
        assert not store.is_configured()
        environ.update({"FUTUUR_PUBLIC_KEY": "PK1", "FUTUUR_PRIVATE_KEY": "SECRET"})
        assert store.load() == CREDS

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("FUTUUR_PUBLIC_KEY", "PK-env")
        monkeypatch.setenv("FUTUUR_PRIVATE_KEY", "SECRET-env")
        assert CredentialStore().load() == Credentials("PK-env", "SECRET-env")

    def test_configure_overrides_environment(self):
        store = CredentialStore(environ={"FUTUUR_PUBLIC_KEY": "PK1", "FUTUUR_PRIVATE_KEY": "SECRET"})
        store.configure(private_key="NEW")
        assert store.load() == Credentials("PK1", "NEW")

    def test_reload_clears_overrides(self):
        store = CredentialStore(environ={"FUTUUR_PUBLIC_KEY": "PK1", "FUTUUR_PRIVATE_KEY": "SECRET"})
        store.configure(public_key="PK2")
        assert store.reload() == CREDS

    def test_repr_hides_private_key(self):
        assert "SECRET" not in repr(CREDS)
