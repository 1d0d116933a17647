from __future__ import annotations
import random
import re
from typing import Optional

SESSION_ID_MIN = 10000
SESSION_ID_RANGE = 990000
SESSION_ID_LENGTH = 40
SESSION_ID_FILLER = 'c04b8f7b594cdeedebc2a8029b82943b0a620815'

_COOKIE_RE = re.compile(r'sid=([^;]+)')


def generate_session_id(rng: Optional[random.Random] = None) -> str:
    """Random decimal id right-padded with the filler to 40 characters"""
    rng = rng or random
    number = rng.randrange(SESSION_ID_MIN, SESSION_ID_MIN + SESSION_ID_RANGE)
    return (str(number) + SESSION_ID_FILLER)[:SESSION_ID_LENGTH]


def create_session_cookie(session_id: Optional[str] = None) -> str:
    """Format the cookie header value; generates a fresh id when none given"""
    return f"sid={session_id or generate_session_id()}"


def extract_session_from_cookie(cookie: str) -> Optional[str]:
    """Return the sid value from a cookie string, or None"""
    match = _COOKIE_RE.search(cookie)
    return match.group(1) if match else None
