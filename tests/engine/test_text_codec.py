from prefixchat.engine.text_codec import assemble


def test_well_formed_text_round_trips() -> None:
    text = "Hello, wörld! 日本語 🙂"
    assert assemble(text.encode("utf-8")) == text


def test_empty_input() -> None:
    assert assemble(b"") == ""


def test_truncated_trailing_codepoint_is_dropped() -> None:
    emoji = "🙂".encode("utf-8")  # 4 bytes
    for cut in (1, 2, 3):
        raw = b"ok " + emoji[: len(emoji) - cut]
        assert assemble(raw) == "ok "


def test_truncated_three_byte_codepoint_is_dropped() -> None:
    raw = "a語".encode("utf-8")[:-1]
    assert assemble(raw) == "a"


def test_lone_lead_byte_in_the_middle_is_skipped() -> None:
    # 0xE6 announces a 3-byte sequence but is followed by ASCII.
    assert assemble(b"ab\xe6cd") == "abcd"


def test_stray_continuation_bytes_are_dropped() -> None:
    assert assemble(b"\x80\xbfhi") == "hi"


def test_invalid_lead_bytes_never_raise() -> None:
    assert assemble(b"\xf8\xff\xfex") == "x"


def test_fragment_split_across_tokens_is_lost_per_fragment() -> None:
    raw = "é".encode("utf-8")
    assert assemble(raw[:1]) == ""
    assert assemble(raw[1:]) == ""
    assert assemble(raw[:1] + raw[1:]) == "é"
