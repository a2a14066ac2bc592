"""
Webhook HMAC authentication: signature, replay window, credential errors.
"""
import pytest

from courier_intel.errors import AuthenticationError
from courier_intel.services import shop_service
from courier_intel.services.request_authenticator import (
    RequestAuthenticator,
    build_string_to_sign,
    normalize_path,
    sign,
)

TS = 1700000000
BODY = b'{"a":1}'


@pytest.fixture
def auth(db):
    return RequestAuthenticator(db, replay_window=300)


def _authenticate(auth, shop, *, ts=TS, now=TS, method="POST", path="/api/orders",
                  body=BODY, signature=None, api_key=None):
    if signature is None:
        signature = sign(shop.api_secret, ts, method, path, body)
    return auth.authenticate(
        api_key=api_key if api_key is not None else shop.api_key,
        timestamp=str(ts),
        signature=signature,
        method=method,
        path=path,
        body=body,
        now=now,
    )


# ────────────────────────────────────────────
# SIGNING
# ────────────────────────────────────────────


@pytest.mark.parametrize("path,expected", [
    ("/api/orders", "/api/orders"),
    ("api/orders/", "/api/orders"),
    ("/api/orders?debug=1", "/api/orders"),
    ("/", "/"),
])
def test_normalize_path(path, expected):
    assert normalize_path(path) == expected


def test_string_to_sign_layout():
    assert build_string_to_sign(TS, "post", "/api/orders/", BODY) == b'1700000000POST/api/orders{"a":1}'


def test_signature_is_lowercase_hex_sha256():
    signature = sign("secret", TS, "POST", "/api/orders", BODY)
    assert len(signature) == 64
    assert signature == signature.lower()


# ────────────────────────────────────────────
# VERIFICATION
# ────────────────────────────────────────────


def test_valid_request_resolves_shop(auth, shop):
    assert _authenticate(auth, shop).id == shop.id


def test_str_and_bytes_body_sign_identically(auth, shop):
    signature = sign(shop.api_secret, TS, "POST", "/api/orders", BODY.decode())
    assert _authenticate(auth, shop, signature=signature).id == shop.id


def test_uppercase_signature_accepted(auth, shop):
    signature = sign(shop.api_secret, TS, "POST", "/api/orders", BODY).upper()
    assert _authenticate(auth, shop, signature=signature).id == shop.id


def test_tampered_body_rejected(auth, shop):
    signature = sign(shop.api_secret, TS, "POST", "/api/orders", BODY)
    with pytest.raises(AuthenticationError) as exc:
        _authenticate(auth, shop, signature=signature, body=b'{"a":2}')
    assert exc.value.message == "Invalid credentials"


def test_other_path_rejected(auth, shop):
    signature = sign(shop.api_secret, TS, "POST", "/api/orders", BODY)
    with pytest.raises(AuthenticationError):
        _authenticate(auth, shop, signature=signature, path="/api/vouchers")


def test_unknown_key_and_bad_signature_share_message(auth, shop):
    with pytest.raises(AuthenticationError) as unknown:
        _authenticate(auth, shop, api_key="ci_does_not_exist")
    with pytest.raises(AuthenticationError) as bad_sig:
        _authenticate(auth, shop, signature="0" * 64)
    assert unknown.value.message == bad_sig.value.message


def test_inactive_shop_rejected(auth, db, shop):
    shop_service.set_active(db, shop.slug, active=False)
    with pytest.raises(AuthenticationError):
        _authenticate(auth, shop)


@pytest.mark.parametrize("missing", ["api_key", "timestamp", "signature"])
def test_missing_header_rejected(auth, shop, missing):
    kwargs = {
        "api_key": shop.api_key,
        "timestamp": str(TS),
        "signature": sign(shop.api_secret, TS, "POST", "/api/orders", BODY),
    }
    kwargs[missing] = None
    with pytest.raises(AuthenticationError) as exc:
        auth.authenticate(method="POST", path="/api/orders", body=BODY, now=TS, **kwargs)
    assert exc.value.message == "Missing authentication headers"


def test_non_numeric_timestamp_rejected(auth, shop):
    with pytest.raises(AuthenticationError) as exc:
        auth.authenticate(
            api_key=shop.api_key, timestamp="yesterday", signature="0" * 64,
            method="POST", path="/api/orders", body=BODY, now=TS,
        )
    assert exc.value.message == "Invalid credentials"


# ────────────────────────────────────────────
# REPLAY WINDOW
# ────────────────────────────────────────────


@pytest.mark.parametrize("skew", [0, 299, 300, -299, -300])
def test_timestamp_inside_window_accepted(auth, shop, skew):
    assert _authenticate(auth, shop, now=TS + skew).id == shop.id


@pytest.mark.parametrize("skew", [301, -301, 3600])
def test_timestamp_outside_window_rejected(auth, shop, skew):
    with pytest.raises(AuthenticationError) as exc:
        _authenticate(auth, shop, now=TS + skew)
    assert exc.value.message == "Invalid credentials"
    assert exc.value.status_code == 401


def test_stale_request_does_not_reveal_key_validity(auth, shop):
    with pytest.raises(AuthenticationError) as known:
        _authenticate(auth, shop, now=TS + 3600)
    with pytest.raises(AuthenticationError) as unknown:
        _authenticate(auth, shop, now=TS + 3600, api_key="ci_does_not_exist")
    with pytest.raises(AuthenticationError) as garbled:
        auth.authenticate(
            api_key="ci_does_not_exist", timestamp="yesterday", signature="0" * 64,
            method="POST", path="/api/orders", body=BODY, now=TS,
        )
    assert known.value.to_dict() == unknown.value.to_dict() == garbled.value.to_dict()
