"""
Display profile cookie: which character pack ("ip") and character ("cara")
the visitor picked last time.

Not a credential. The value is base64url(JSON) in an HttpOnly cookie so the
frame page can restore the selection without trusting client storage.
"""

import base64
import json
import re
from typing import Optional

from pydantic import BaseModel, field_validator


PROFILE_COOKIE = "oshi_profile"

_ID_RE = re.compile(r"^[a-z0-9_\-]+$", re.IGNORECASE)


class Profile(BaseModel):
    ip: str
    cara: str

    @field_validator("ip", "cara", mode="before")
    @classmethod
    def check_id(cls, v) -> str:
        v = str(v or "").strip()
        if not _ID_RE.match(v):
            raise ValueError("must be letters, digits, '_' or '-'")
        return v


def encode_profile(profile: Profile) -> str:
    raw = json.dumps({"ip": profile.ip, "cara": profile.cara}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_profile(value: Optional[str]) -> Optional[Profile]:
    """Decode the cookie value; anything unreadable counts as "no profile"."""
    if not value:
        return None
    s = value.strip()
    s += "=" * (-len(s) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(s.encode("ascii")).decode("utf-8"))
        return Profile(**payload)
    except (ValueError, TypeError):
        return None
