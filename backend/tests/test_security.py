import hashlib
import hmac

from portal.core.security import (
    generate_backup_code,
    generate_connect_code,
    generate_signature,
    normalize_connect_code,
    order_idempotency_key,
    verify_signature,
    verify_webhook_signature,
)

NOW_MS = 1_760_000_000_000


def test_signature_round_trip():
    body = b'{"woo_order_id":"1001"}'
    signature = generate_signature("store-1", str(NOW_MS), "nonce-1", body, "secret")

    assert verify_signature("store-1", str(NOW_MS), "nonce-1", body, signature, "secret", now_ms=NOW_MS) == (True, None)


def test_signature_rejects_tampered_body():
    signature = generate_signature("store-1", str(NOW_MS), "nonce-1", b"{}", "secret")

    valid, error = verify_signature("store-1", str(NOW_MS), "nonce-1", b'{"x":1}', signature, "secret", now_ms=NOW_MS)

    assert not valid
    assert error == "Invalid signature"


def test_signature_window_is_five_minutes():
    timestamp = str(NOW_MS - 5 * 60 * 1000 - 1)
    signature = generate_signature("store-1", timestamp, "n", b"", "secret")

    valid, error = verify_signature("store-1", timestamp, "n", b"", signature, "secret", now_ms=NOW_MS)

    assert not valid
    assert error == "Request timestamp expired"


def test_signature_rejects_non_numeric_timestamp():
    assert verify_signature("s", "yesterday", "n", b"", "sig", "secret", now_ms=NOW_MS) == (False, "Invalid timestamp format")


def test_webhook_signature_is_hmac_of_raw_body():
    body = b'{"type":"checkingAccount.balance.updated"}'
    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

    assert verify_webhook_signature(body, signature.upper(), "whsec")
    assert not verify_webhook_signature(body + b" ", signature, "whsec")


def test_connect_code_format_and_normalization():
    code = generate_connect_code()

    assert len(code) == 14
    assert code[4] == "-" and code[9] == "-"
    assert normalize_connect_code(code.lower()) == code.replace("-", "")


def test_backup_code_is_eight_digits():
    code = generate_backup_code()

    assert len(code) == 8
    assert code.isdigit()


def test_order_idempotency_key():
    assert order_idempotency_key("store-1", "1001") == "store:store-1:order:1001:event:create"
