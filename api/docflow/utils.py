import hashlib, json
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from itsdangerous import URLSafeSerializer
from .config import SECRET_KEY

CENT = Decimal("0.01")


def utcnow() -> datetime:
    # naive UTC, matching what the database hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_json_default)


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def load_json(raw, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def make_token(payload: dict) -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="operator")
    return s.dumps(payload)


def read_token(token: str) -> dict:
    s = URLSafeSerializer(SECRET_KEY, salt="operator")
    return s.loads(token)


def to_cents(amount) -> int:
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(CENT)


def format_money(cents: int, currency: str = "usd") -> str:
    symbol = "$" if (currency or "usd").lower() == "usd" else ""
    text = f"{symbol}{from_cents(cents):,.2f}"
    return text if symbol else f"{text} {currency.upper()}"


def percent_of(cents: int, rate) -> int:
    value = (Decimal(cents) * Decimal(str(rate or 0)) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(value)


def long_date(value) -> str:
    if not value:
        return ""
    return f"{value:%B} {value.day}, {value.year}"
