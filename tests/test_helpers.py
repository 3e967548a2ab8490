import re

from sessionmux.utils.helpers import (
    extract_phone,
    generate_message_id,
    is_valid_session_id,
    normalize_recipient,
    safe_filename,
)


def test_session_id_pattern():
    assert is_valid_session_id("campaign_01")
    assert is_valid_session_id("a-b")
    assert not is_valid_session_id("ab")
    assert not is_valid_session_id("x" * 51)
    assert not is_valid_session_id("has space")
    assert not is_valid_session_id(None)


def test_normalize_recipient():
    assert normalize_recipient("1122334455") == "541122334455@c.us"
    assert normalize_recipient("+54 9 11 2233-4455") == "5491122334455@c.us"
    assert normalize_recipient("5491122334455@c.us") == "5491122334455@c.us"
    assert normalize_recipient("5551234") == "5551234@c.us"
    assert normalize_recipient("12345-678@g.us") == "12345-678@g.us"
    assert normalize_recipient("1122334455", country_code="1") == "11122334455@c.us"


def test_extract_phone():
    assert extract_phone("5491122334455@c.us") == "5491122334455"
    assert extract_phone("1122334455@c.us") == "541122334455"


def test_message_ids_are_unique_and_shaped():
    ids = {generate_message_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(re.fullmatch(r"msg_[0-9a-z]+_[0-9a-z]{5}", i) for i in ids)


def test_safe_filename():
    assert safe_filename("5491122@c.us") == "5491122_c.us"
