from dataclasses import dataclass, field
from typing import Optional

THREAD_ID_HEADER = "X-GM-THRID"


def normalize_message_id(value: Optional[str]) -> Optional[str]:
    """
    Normalize a Message-ID style value: trim whitespace and strip a single
    leading '<' and trailing '>'. Absent or empty values return None.
    """
    if value is None:
        return None
    value = str(value).strip()
    if value.startswith("<"):
        value = value[1:]
    if value.endswith(">"):
        value = value[:-1]
    value = value.strip()
    return value or None


def parse_references(value: Optional[str]) -> list[str]:
    """Split a References header into normalized Message-IDs, oldest first."""
    if not value:
        return []
    ids = []
    for token in str(value).replace(",", " ").split():
        mid = normalize_message_id(token)
        if mid and mid not in ids:
            ids.append(mid)
    return ids


class MessageHeaders:
    """
    Case-insensitive, read-only view over an email's headers.

    The named properties cover every header the correlation and
    loop-prevention code looks at, so callers never pass header names
    around as strings.
    """

    def __init__(self, headers=None):
        self._headers = {}
        for name, value in (headers or {}).items():
            self._headers.setdefault(name.lower(), str(value))

    def get(self, name: str, default=None):
        return self._headers.get(name.lower(), default)

    def has(self, name: str) -> bool:
        return name.lower() in self._headers

    def items(self):
        return self._headers.items()

    def __contains__(self, name):
        return self.has(name)

    def __len__(self):
        return len(self._headers)

    def _lowered(self, name):
        value = self.get(name)
        return value.strip().lower() if value is not None else None

    # Correlation headers

    @property
    def message_id(self) -> Optional[str]:
        return normalize_message_id(self.get("Message-ID"))

    @property
    def in_reply_to(self) -> Optional[str]:
        return normalize_message_id(self.get("In-Reply-To"))

    @property
    def references(self) -> list[str]:
        return parse_references(self.get("References"))

    @property
    def reference_candidates(self) -> list[str]:
        """References plus In-Reply-To, used for Message-ID chain matching."""
        candidates = self.references
        if self.in_reply_to and self.in_reply_to not in candidates:
            candidates.append(self.in_reply_to)
        return candidates

    @property
    def thread_id(self) -> Optional[str]:
        value = self.get(THREAD_ID_HEADER)
        if value is None:
            return None
        return value.strip() or None

    # Loop-prevention headers

    @property
    def auto_submitted(self) -> Optional[str]:
        return self._lowered("Auto-Submitted")

    @property
    def precedence(self) -> Optional[str]:
        return self._lowered("Precedence")

    @property
    def x_autoreply(self) -> Optional[str]:
        return self._lowered("X-Autoreply")

    @property
    def has_auto_response_suppress(self) -> bool:
        return self.has("X-Auto-Response-Suppress")

    @property
    def has_exchange_generated_source(self) -> bool:
        return self.has("X-MS-Exchange-Generated-Message-Source")


@dataclass
class InboundMessage:
    """
    Normalized representation of a fetched email. Only the fields needed
    for ticket correlation are interpreted.
    """

    from_email: str
    from_name: Optional[str]
    to_email: str
    subject: str
    body_text: Optional[str]
    body_html: Optional[str]
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: list = field(default_factory=list)
    thread_id: Optional[str] = None
    headers: MessageHeaders = field(default_factory=MessageHeaders)
    is_auto_reply: bool = False
    raw: str = ""
