# app/utils/signing.py
"""HMAC helpers used by webhook subscriptions and verification"""
import hashlib
import hmac


def hmac_sha256_hex(secret: str, message) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str) -> bool:
    """Constant-time comparison"""
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())
