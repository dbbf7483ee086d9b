import hashlib
import hmac
import secrets
from typing import Optional, Union
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed or not hashed.startswith("$2"):
        return False
    return _pwd_context.verify(password, hashed)


def hash_session_token(token: str) -> str:
    # Sessions and invite tokens are stored as a one-way hash so a DB leak doesn't grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_opaque_token() -> str:
    return secrets.token_urlsafe(32)


def hmac_sha256_hex(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: Optional[str], message: Union[str, bytes], signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature."""
    if not secret or not signature:
        return False
    expected = hmac_sha256_hex(secret, message)
    return hmac.compare_digest(expected, signature.strip().lower())
