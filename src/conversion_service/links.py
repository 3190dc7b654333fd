import base64
import hashlib
import hmac
import json
import logging
import time

log = logging.getLogger(__name__)


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_to_bytes(value: str) -> bytes:
    pad = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + pad)


def _sign(payload: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return _b64url(digest)


def generate_download_token(
    file_id: str,
    user_id: str,
    secret: str,
    expires_in: int = 3600,
    *,
    now: float | None = None,
) -> str:
    """Signed ``<payload>.<signature>`` token granting download of one file."""
    expires_at = int((now if now is not None else time.time()) + expires_in)
    payload = json.dumps(
        {"fileId": file_id, "userId": user_id, "expiresAt": expires_at},
        separators=(",", ":"),
    )
    encoded = _b64url(payload.encode("utf-8"))
    return f"{encoded}.{_sign(encoded, secret)}"


def verify_download_token(token: str, secret: str, *, now: float | None = None) -> tuple[str, str] | None:
    """Return ``(file_id, user_id)`` for a valid, unexpired token, else None."""
    encoded, _, signature = (token or "").partition(".")
    if not encoded or not signature:
        return None
    if not hmac.compare_digest(signature.encode("utf-8"), _sign(encoded, secret).encode("utf-8")):
        return None
    try:
        payload = json.loads(_b64url_to_bytes(encoded))
        file_id = str(payload["fileId"])
        user_id = str(payload["userId"])
        expires_at = int(payload["expiresAt"])
    except (ValueError, KeyError, TypeError) as e:
        log.warning("malformed download token payload: %s", e)
        return None
    if expires_at < int(now if now is not None else time.time()):
        return None
    return file_id, user_id
