from whitechat.config import DEFAULT_TITLE
from whitechat.core.titles import derive_title


def test_collapses_whitespace():
    assert derive_title("  hello   world  ") == "hello world"
    assert derive_title("line one\n\tline two") == "line one line two"


def test_truncates_long_text():
    text = "a" * 52
    assert derive_title(text) == "a" * 48 + "…"


def test_keeps_text_at_limit():
    text = "b" * 48
    assert derive_title(text) == text


def test_empty_falls_back_to_default():
    assert derive_title("") == DEFAULT_TITLE
    assert derive_title("   \n ") == DEFAULT_TITLE
