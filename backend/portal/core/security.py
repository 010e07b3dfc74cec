"""
签名、随机码、幂等键

店铺请求签名：
    signature = HMAC-SHA256(secret, f"{store_id}:{timestamp}:{nonce}:{sha256_hex(body)}")
timestamp 为毫秒，允许 5 分钟偏差。
"""

import hashlib
import hmac
import secrets
import string
import time
from typing import Optional, Tuple

SIGNATURE_MAX_AGE_MS = 5 * 60 * 1000

CONNECT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # 去掉易混淆字符
SESSION_TOKEN_ALPHABET = string.ascii_letters + string.digits


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def generate_signature(store_id: str, timestamp: str, nonce: str, body: bytes, secret: str) -> str:
    signing_string = f"{store_id}:{timestamp}:{nonce}:{sha256_hex(body)}"
    return hmac.new(secret.encode(), signing_string.encode(), hashlib.sha256).hexdigest()


def verify_signature(
    store_id: str,
    timestamp: str,
    nonce: str,
    body: bytes,
    signature: str,
    secret: str,
    max_age_ms: int = SIGNATURE_MAX_AGE_MS,
    now_ms: Optional[int] = None,
) -> Tuple[bool, Optional[str]]:
    """校验店铺请求签名，返回 (是否通过, 错误信息)"""
    try:
        timestamp_ms = int(timestamp)
    except (TypeError, ValueError):
        return False, "Invalid timestamp format"

    now = now_ms if now_ms is not None else int(time.time() * 1000)
    if abs(now - timestamp_ms) > max_age_ms:
        return False, "Request timestamp expired"

    expected = generate_signature(store_id, timestamp, nonce, body, secret)
    if not hmac.compare_digest(signature, expected):
        return False, "Invalid signature"
    return True, None


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Mercury Webhook：原始请求体的 HMAC-SHA256 十六进制"""
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip().lower(), expected)


def generate_connect_code() -> str:
    """XXXX-XXXX-XXXX"""
    raw = "".join(secrets.choice(CONNECT_CODE_ALPHABET) for _ in range(12))
    return f"{raw[0:4]}-{raw[4:8]}-{raw[8:12]}"


def normalize_connect_code(code: str) -> str:
    return code.upper().replace("-", "").strip()


def generate_store_secret() -> str:
    return secrets.token_urlsafe(32)


def hash_secret(secret: str) -> str:
    return sha256_hex(secret.encode())


def generate_backup_code() -> str:
    """8 位数字登录码"""
    return str(10000000 + secrets.randbelow(90000000))


def generate_session_token(length: int = 64) -> str:
    return "".join(secrets.choice(SESSION_TOKEN_ALPHABET) for _ in range(length))


def generate_invitation_token() -> str:
    return secrets.token_urlsafe(32)


def order_idempotency_key(store_id: str, woo_order_id: str, event_type: str = "create") -> str:
    return f"store:{store_id}:order:{woo_order_id}:event:{event_type}"


def webhook_idempotency_key(source: str, event_id: str, event_type: str) -> str:
    return f"webhook:{source}:{event_id}:{event_type}"
