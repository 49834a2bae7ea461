"""Normalise raw OWA FindItem items into MessageRecord."""

import logging
from datetime import datetime
from typing import Any

from butler.mail.headers import decode_entities, parse_message_id_list
from butler.mail.types import NO_SUBJECT, UNKNOWN_FOLDER, MessageRecord

logger = logging.getLogger(__name__)

# MAPI property tags for the reply-chain headers, in both the hex form we
# request and the decimal form some OWA builds echo back.
IN_REPLY_TO_TAGS = frozenset({"0x1042", "4162"})
REFERENCES_TAGS = frozenset({"0x1039", "4153"})


def _property_tag(prop: dict[str, Any]) -> str:
    uri = prop.get("ExtendedFieldURI") or {}
    tag = uri.get("PropertyTag") if isinstance(uri, dict) else None
    if tag in (None, ""):
        tag = prop.get("PropertyTag", "")
    return str(tag).strip().lower()


def extract_reply_headers(item: dict[str, Any]) -> tuple[str, str]:
    """Return the raw (In-Reply-To, References) values from the extended-property bag."""
    in_reply_to = ""
    references = ""
    props = item.get("ExtendedProperty") or []
    if not isinstance(props, list):
        return in_reply_to, references
    for prop in props:
        if not isinstance(prop, dict):
            continue
        tag = _property_tag(prop)
        if tag in IN_REPLY_TO_TAGS:
            in_reply_to = str(prop.get("Value") or "")
        elif tag in REFERENCES_TAGS:
            references = str(prop.get("Value") or "")
    return in_reply_to, references


def parse_received(value: object) -> datetime | None:
    """Parse an OWA timestamp ("2026-03-01T09:30:00Z"); None if absent or malformed."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable DateTimeReceived %r", value)
        return None


def _addresses(item: dict[str, Any], list_key: str, display_key: str) -> frozenset[str]:
    recipients = item.get(list_key)
    if isinstance(recipients, list):
        return frozenset(
            str(r["EmailAddress"]).lower()
            for r in recipients
            if isinstance(r, dict) and r.get("EmailAddress")
        )
    display = item.get(display_key)
    if isinstance(display, str) and display.strip():
        return frozenset(part.strip() for part in display.split(";") if part.strip())
    return frozenset()


def _mapping(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def record_from_item(item: dict[str, Any], folder_label: str) -> MessageRecord:
    """Map one FindItem/GetItem item dict to a MessageRecord.

    Nested objects of the wrong shape are read as empty, so a bad item comes
    back with an empty id and is dropped by the aggregator.
    """
    item_id = _mapping(item.get("ItemId"))
    sender = _mapping(_mapping(item.get("From")).get("Mailbox"))
    in_reply_to_raw, references_raw = extract_reply_headers(item)

    return MessageRecord(
        id=str(item_id.get("Id") or ""),
        revision_token=str(item_id.get("ChangeKey") or ""),
        subject=str(item.get("Subject") or NO_SUBJECT),
        sender=str(sender.get("EmailAddress") or ""),
        received_at=parse_received(item.get("DateTimeReceived")),
        message_id=decode_entities(item.get("InternetMessageId") or ""),
        in_reply_to=tuple(parse_message_id_list(in_reply_to_raw)),
        references=tuple(parse_message_id_list(references_raw)),
        source_folder=folder_label.strip() if folder_label and folder_label.strip() else UNKNOWN_FOLDER,
        preview_text=str(item.get("Preview") or ""),
        importance=str(item.get("Importance") or "Normal"),
        is_read=bool(item.get("IsRead", False)),
        to_recipients=_addresses(item, "ToRecipients", "DisplayTo"),
        cc_recipients=_addresses(item, "CcRecipients", "DisplayCc"),
    )
