import base64, binascii, hashlib, hmac, json, re, secrets
from datetime import datetime, timezone
from itsdangerous import URLSafeSerializer, BadSignature
from .config import SECRET_KEY

DATA_URL_RE = re.compile(r"^data:image/(png|jpeg|jpg);base64,(.*)$", re.DOTALL)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
GENESIS_HASH = "0" * 64


def utcnow() -> datetime:
    # naive UTC, matching what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def sha256_text(s: str) -> str:
    return sha256_bytes(s.encode())


def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_json_default)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def load_json(raw: str | None, fallback=None):
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def random_token(nbytes: int = 32) -> str:
    """Hex token; 32 bytes gives the fixed 64-character magic link."""
    return secrets.token_hex(nbytes)


def otp_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def tokens_equal(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def hmac_sha256(secret: str, payload: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def decode_data_url(data_url: str) -> tuple[str, bytes] | None:
    """Returns (subtype, bytes) for a well-formed png/jpeg data URL, else None."""
    m = DATA_URL_RE.match(data_url or "")
    if not m:
        return None
    subtype, payload = m.group(1), m.group(2).strip()
    if not payload:
        return None
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not raw:
        return None
    return ("jpeg" if subtype == "jpg" else subtype), raw


def make_token(payload: dict, salt: str = "signing") -> str:
    s = URLSafeSerializer(SECRET_KEY, salt=salt)
    return s.dumps(payload)


def read_token(token: str, salt: str = "signing") -> dict | None:
    s = URLSafeSerializer(SECRET_KEY, salt=salt)
    try:
        data = s.loads(token)
    except BadSignature:
        return None
    return data if isinstance(data, dict) else None
