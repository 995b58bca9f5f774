"""
Stored KiotViet credential (system table row). Tolerates the legacy raw-string value.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel

_FRACTION = re.compile(r"\.(\d+)")


class Credential(BaseModel):
    """Bearer read from the system table. shape tells which value form it came from."""

    token: str
    expires_at: datetime | None = None
    shape: Literal["raw", "structured"] = "structured"

    @classmethod
    def from_value(cls, value: Any) -> "Credential | None":
        """Parse system.value: either the bare token string or {token, expires_at}."""
        if isinstance(value, str):
            token = value.strip()
            return cls(token=token, shape="raw") if token else None
        if isinstance(value, dict) and value.get("token"):
            return cls(
                token=str(value["token"]),
                expires_at=_parse_expiry(value.get("expires_at")),
                shape="structured",
            )
        return None

    def to_value(self) -> dict[str, Any]:
        expires_at = self.expires_at.astimezone(timezone.utc) if self.expires_at else None
        return {
            "token": self.token,
            "expires_at": expires_at.isoformat().replace("+00:00", "Z") if expires_at else None,
        }

    def is_valid_at(self, now: datetime, skew_seconds: int = 0) -> bool:
        """True if the credential has an expiry at least skew_seconds after now."""
        if self.expires_at is None:
            return False
        return self.expires_at - now >= timedelta(seconds=skew_seconds)


def _parse_expiry(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), str(value).strip(), count=1)
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
