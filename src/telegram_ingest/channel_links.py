# file: src/telegram_ingest/channel_links.py
import re
from typing import List, Pattern

from webapp_backend.errors import InvalidChannelLinkError

# t.me/<name>, telegram.me/<name>, telegram.org/<name>; имя до первого / или ?
CHANNEL_LINK_PATTERNS: List[Pattern[str]] = [
    re.compile(r"t\.me/([^/?]+)"),
    re.compile(r"telegram\.me/([^/?]+)"),
    re.compile(r"telegram\.org/([^/?]+)"),
]


def extract_channel_name(link: str) -> str:
    """
    Достаём короткое имя канала из ссылки или голого имени.

    "https://t.me/durov" -> "durov", "durov" -> "durov".
    Всё остальное -> InvalidChannelLinkError.
    """
    value = str(link or "").strip()

    for pattern in CHANNEL_LINK_PATTERNS:
        m = pattern.search(value)
        if m:
            return m.group(1)

    if value and "/" not in value and "." not in value:
        return value

    raise InvalidChannelLinkError("Invalid Telegram channel link format")
