from __future__ import annotations

import re
from typing import Optional

_SECRET_KEYS = ("password", "passphrase", "psk", "secret", "token")

_KV_RE = re.compile(r"(?i)\b(" + "|".join(_SECRET_KEYS) + r")(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|\S+)")

MASK = "***"


def redact(text: Optional[str]) -> Optional[str]:
    if not text:
        return text
    return _KV_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", text)
