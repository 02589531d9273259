"""Feature normalizer — maps raw ingestion rows onto the canonical customer record.

Raw input arrives from live tracking, CSV uploads and reprocessing with
inconsistent headers ("Customer_ID", " user id ", "\\ufeffuser_id", "mrr",
"revenue", ...). Every canonical field has an ordered alias list; the first
alias present in the row wins. Only the customer key is mandatory, every other
field falls back to its default.
"""

import math
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from churnpilot.exceptions import ValidationError

UNKNOWN = "Unknown"

FIELD_ALIASES: dict[str, list[str]] = {
    "customer_id": [
        "customer_id", "user_id", "customerid", "userid", "customer_key",
        "client_id", "account_id", "customer", "id",
    ],
    "owner_id": ["owner_id", "tenant_id", "workspace_id", "account_owner"],
    "email": ["email", "customer_email", "email_address", "user_email", "e_mail", "mail"],
    "days_since_signup": [
        "days_since_signup", "signup_days", "account_age_days", "tenure_days",
        "days_since_signup_calculated",
    ],
    "monthly_revenue": [
        "monthly_revenue", "mrr", "revenue", "monthly_recurring_revenue", "mrr_usd", "amount",
    ],
    "logins_last_30_days": [
        "logins_last_30_days", "logins_last30days", "logins_30d", "login_count", "logins",
        "monthly_logins",
    ],
    "active_features_used": [
        "active_features_used", "features_used", "feature_usage", "active_features", "features",
    ],
    "support_tickets_opened": [
        "support_tickets_opened", "tickets_opened", "support_tickets", "tickets",
    ],
    "email_opens_last_30_days": [
        "email_opens_last_30_days", "email_opens_last30days", "email_opens", "opens",
    ],
    "last_login_days_ago": [
        "last_login_days_ago", "days_since_last_login", "last_login_days", "inactive_days",
        "last_login_calculated",
    ],
    "billing_issue_count": [
        "billing_issue_count", "billing_issues", "payment_failures", "failed_payments",
    ],
    "subscription_plan": [
        "subscription_plan", "plan", "plan_type", "plan_name", "subscription_type", "tier",
    ],
    "payment_status": ["payment_status", "last_payment_status", "billing_status"],
}

# Date columns used to derive day counts when the count itself is absent
DATE_ALIASES: dict[str, list[str]] = {
    "days_since_signup": ["signup_date", "created_at", "signed_up_at"],
    "last_login_days_ago": ["last_login_date", "last_login", "last_seen_at", "last_active_at"],
}

INT_FIELDS = (
    "days_since_signup",
    "logins_last_30_days",
    "active_features_used",
    "support_tickets_opened",
    "email_opens_last_30_days",
    "last_login_days_ago",
    "billing_issue_count",
)
FLOAT_FIELDS = ("monthly_revenue",)

_QUOTES = "\"'`"
_SEPARATORS = re.compile(r"[\s\-\.]+")
_NUMERIC_NOISE = re.compile(r"[,$€£¥%\s]")


@dataclass(frozen=True)
class CustomerFeatureRecord:
    """Canonical, total behavioral/billing snapshot of one customer."""

    customer_id: str
    owner_id: str = ""
    email: str = ""
    days_since_signup: int = 0
    monthly_revenue: float = 0.0
    logins_last_30_days: int = 0
    active_features_used: int = 0
    support_tickets_opened: int = 0
    email_opens_last_30_days: int = 0
    last_login_days_ago: int = 0
    billing_issue_count: int = 0
    subscription_plan: str = UNKNOWN
    payment_status: str = UNKNOWN

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_key(key: Any) -> str:
    """Fold a raw header into its lookup form: no BOM, quotes or outer whitespace, lower snake case."""
    text = str(key).replace("\ufeff", "").strip().strip(_QUOTES).strip()
    text = _SEPARATORS.sub("_", text.lower())
    return re.sub(r"_+", "_", text).strip("_")


def clean_value(value: Any) -> Any:
    if isinstance(value, str):
        return value.replace("\ufeff", "").strip().strip(_QUOTES).strip()
    return value


def resolve_field(row: dict, field: str) -> Optional[Any]:
    """Return the value of the first alias of ``field`` present and non-blank in ``row``."""
    return _lookup(_fold_row(row), FIELD_ALIASES[field])


def _fold_row(row: dict) -> dict:
    folded = {}
    for key, value in row.items():
        folded.setdefault(normalize_key(key), clean_value(value))
    return folded


def _lookup(folded: dict, aliases: list[str]) -> Optional[Any]:
    for alias in aliases:
        value = folded.get(alias)
        if value is None or value == "":
            continue
        return value
    return None


def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        else:
            number = float(_NUMERIC_NOISE.sub("", str(value)))
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def days_since(value: Any, today: Optional[date] = None) -> Optional[int]:
    """Whole days between an ISO date/datetime string and today; None if unparseable."""
    if isinstance(value, datetime):
        moment = value.date()
    elif isinstance(value, date):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
        except ValueError:
            return None
    today = today or datetime.now(timezone.utc).date()
    return abs((today - moment).days)


def normalize_plan(plan: Any) -> str:
    if plan is None or str(plan).strip() == "":
        return UNKNOWN
    text = str(plan).strip()
    lowered = text.lower()
    if any(word in lowered for word in ("enterprise", "business", "team")):
        return "Enterprise"
    if any(word in lowered for word in ("pro", "premium", "plus", "growth")):
        return "Pro"
    if any(word in lowered for word in ("free", "trial")):
        return "Free"
    return text


def normalize_payment_status(status: Any) -> str:
    if status is None or str(status).strip() == "":
        return UNKNOWN
    text = str(status).strip()
    lowered = text.lower()
    if any(word in lowered for word in ("overdue", "past_due", "past due", "unpaid")):
        return "Overdue"
    if any(word in lowered for word in ("fail", "error", "decline")):
        return "Failed"
    if any(word in lowered for word in ("success", "paid", "complete")):
        return "Success"
    if any(word in lowered for word in ("pending", "processing")):
        return "Pending"
    return text


def normalize_record(
    row: dict,
    owner_id: Optional[str] = None,
    today: Optional[date] = None,
) -> CustomerFeatureRecord:
    """Build a total CustomerFeatureRecord from a raw row.

    Raises ValidationError only when no customer-key alias resolves.
    ``owner_id``, when given, overrides anything found in the row.
    """
    folded = _fold_row(row or {})

    customer_id = _lookup(folded, FIELD_ALIASES["customer_id"])
    if customer_id is None or str(customer_id).strip() == "":
        raise ValidationError(["customer_id"], {"customer_id": FIELD_ALIASES["customer_id"]})

    values: dict[str, Any] = {"customer_id": str(customer_id).strip()}

    if owner_id is not None:
        values["owner_id"] = str(owner_id)
    else:
        values["owner_id"] = str(_lookup(folded, FIELD_ALIASES["owner_id"]) or "")

    values["email"] = str(_lookup(folded, FIELD_ALIASES["email"]) or "").lower()

    for field in INT_FIELDS + FLOAT_FIELDS:
        number = parse_number(_lookup(folded, FIELD_ALIASES[field]))
        if number is None and field in DATE_ALIASES:
            raw_date = _lookup(folded, DATE_ALIASES[field])
            if raw_date is not None:
                number = days_since(raw_date, today)
        number = max(0.0, number or 0.0)
        values[field] = int(round(number)) if field in INT_FIELDS else round(number, 2)

    values["subscription_plan"] = normalize_plan(_lookup(folded, FIELD_ALIASES["subscription_plan"]))
    values["payment_status"] = normalize_payment_status(_lookup(folded, FIELD_ALIASES["payment_status"]))

    return CustomerFeatureRecord(**values)
