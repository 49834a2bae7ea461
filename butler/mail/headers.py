"""Message-ID header decoding.

OWA returns In-Reply-To / References / InternetMessageId with HTML entities
escaped (``&lt;abc@host&gt;``).  These helpers undo the escaping and split
the header into its bracketed Message-IDs.  Both are total: any input,
including ``None``, produces a value.
"""

import re

# Order matters: "&amp;" is handled after "&lt;"/"&gt;" so "&amp;lt;" decodes
# to "&lt;" rather than "<".
_ENTITIES: tuple[tuple[str, str], ...] = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)

_MESSAGE_ID_RE = re.compile(r"<[^>]+>")


def decode_entities(raw: object) -> str:
    """Reverse the fixed set of HTML entity escapes OWA applies to headers."""
    if not raw or not isinstance(raw, str):
        return ""
    text = raw
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return text


def parse_message_id_list(raw: object) -> list[str]:
    """Return every ``<...>`` Message-ID in a header value, brackets included."""
    decoded = decode_entities(raw)
    if not decoded:
        return []
    return _MESSAGE_ID_RE.findall(decoded)
