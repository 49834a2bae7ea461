"""Shared pytest fixtures."""

import pytest

from butler.mail.types import MessageRecord
from tests.helpers import make_record


@pytest.fixture
def replied_thread() -> list[MessageRecord]:
    """An Inbox with one reply and the original it answers."""
    return [
        make_record("reply", message_id="<b@x>", in_reply_to=("<a@x>",), subject="Re: Plans"),
        make_record("orig", message_id="<a@x>", subject="Plans"),
    ]
