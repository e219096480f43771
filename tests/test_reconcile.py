from ticketbridge.models import PriorMessage
from ticketbridge.reconcile import (
    contains_attachment_marker,
    contains_chat_attachments,
    decode_html_entities,
    is_duplicate_message,
    process_quoted_content,
    remove_attachment_section,
)


EXISTING = [
    PriorMessage(id="msg1", content="Hello world"),
    PriorMessage(id="msg2", content="This is a test message"),
    PriorMessage(id="msg3", content="Another message with more content here"),
]


def test_duplicate_empty_content_and_empty_history():
    assert is_duplicate_message(EXISTING, "") is False
    assert is_duplicate_message(EXISTING, "   ") is False
    assert is_duplicate_message(EXISTING, None) is False
    assert is_duplicate_message([], "Test message") is False


def test_duplicate_exact_after_trim():
    assert is_duplicate_message(EXISTING, "Hello world") is True
    assert is_duplicate_message(EXISTING, "  This is a test message\n") is True


def test_duplicate_short_content_is_never_flagged():
    assert is_duplicate_message([{"content": "Hi"}], "Hi") is False
    assert is_duplicate_message(EXISTING, "Test") is False


def test_duplicate_fuzzy_containment_both_directions():
    prior = [{"content": "This is a longer message with sufficient content", "id": "m1"}]
    assert is_duplicate_message(prior, "This is a longer message with sufficient content and more") is True
    assert is_duplicate_message(prior, "This is a longer message") is True
    # shorter/longer is exactly one half here
    assert is_duplicate_message(
        [{"content": "This is a long message with extra formatting"}], "This is a long message"
    ) is True


def test_duplicate_fuzzy_rejects_large_length_difference():
    prior = [{"content": "Short message", "id": "m1"}]
    assert is_duplicate_message(
        prior, "Short message with a lot more content that makes it much longer than the original"
    ) is False


def test_duplicate_fuzzy_normalizes_whitespace():
    prior = [PriorMessage(id="m1", content="Message   with   extra   spaces")]
    assert is_duplicate_message(prior, "Message with extra spaces") is True


def test_duplicate_accepts_plain_strings():
    assert is_duplicate_message(["Hello world"], "Hello world") is True


def test_remove_attachment_section_variants():
    assert remove_attachment_section("Hello world\n\nAttachments: <https://x/y.png|y.png>") == "Hello world"
    assert remove_attachment_section(
        "Hello world\n\nAttachments: <https://cdn.discordapp.com/attachments/123/456/image.png>"
    ) == "Hello world"
    assert remove_attachment_section(
        "Hello world\n\nAttachments: [image.png](https://cdn.discordapp.com/attachments/123/456/image.png)"
    ) == "Hello world"
    assert remove_attachment_section("Hello world\n\nAttachments: file_1 | file_2") == "Hello world"
    assert remove_attachment_section("Hello world\n\nAttachments: [file1.png](url1) | [file2.jpg](url2)") == "Hello world"


def test_remove_attachment_section_multiple_occurrences():
    text = "Hello world\n\nAttachments: [a.png](u1)\n\nAttachments: [b.png](u2)"
    assert remove_attachment_section(text) == "Hello world"
    assert remove_attachment_section("Hello\n\nAttachments:\n- a.png\n- b.png") == "Hello"


def test_remove_attachment_section_passthrough():
    assert remove_attachment_section("") == ""
    assert remove_attachment_section(None) == ""
    message = "Hello world\n\nThis is a normal message"
    assert remove_attachment_section(message) == message
    padded = "  keep my spacing  "
    assert remove_attachment_section(padded) == padded


def test_attachment_markers():
    assert contains_attachment_marker("text\nAttachments: x") is True
    assert contains_attachment_marker("no marker here") is False
    echoed = "Hi\n\nAttachments: <https://cdn.discordapp.com/attachments/1/2/photo.png|image_0>"
    assert contains_chat_attachments(echoed) is True
    assert contains_chat_attachments("Hi\n\nAttachments: <https://example.com/a.png|a.png>") is False
    assert contains_chat_attachments(None) is False


def test_decode_html_entities():
    assert decode_html_entities("Hello &amp; welcome! &lt;Click here&gt;") == "Hello & welcome! <Click here>"
    assert decode_html_entities("&quot;quoted&quot; &#39;single&#39;") == "\"quoted\" 'single'"
    assert decode_html_entities("&amp;lt;") == "&lt;"
    assert decode_html_entities(None) == ""


QUOTE_HISTORY = [
    PriorMessage(id="msg1", content="Original message content"),
    PriorMessage(id="msg2", content="Another original message"),
]


def test_quote_without_quote_passes_through():
    result = process_quoted_content("Just a normal message", QUOTE_HISTORY)
    assert result.reply_reference is None
    assert result.content_to_send == "Just a normal message"
    assert result.is_duplicate is False


def test_quote_empty_inputs():
    assert process_quoted_content("", []).content_to_send == ""
    result = process_quoted_content("test", [])
    assert (result.reply_reference, result.content_to_send) == (None, "test")


def test_quote_matches_prior_message():
    result = process_quoted_content("> First message content\nMy reply",
                                    [PriorMessage(id="msg1", content="First message content")])
    assert result.reply_reference == "msg1"
    assert result.content_to_send == "My reply"
    assert result.quoted_lines == ["First message content"]


def test_quote_prefix_without_space():
    result = process_quoted_content(">Original message content\nMy reply to the message", QUOTE_HISTORY)
    assert result.reply_reference == "msg1"
    assert result.content_to_send == "My reply to the message"


def test_quote_multi_line():
    prior = [{"content": "Line one of quote\nLine two of quote", "id": "original"}]
    result = process_quoted_content("> Line one of quote\n> Line two of quote\nMy reply", prior)
    assert result.reply_reference == "original"
    assert result.content_to_send == "My reply"


def test_quote_unmatched_returns_original_text():
    text = "> Something nobody said\nMy reply"
    result = process_quoted_content(text, QUOTE_HISTORY)
    assert result.reply_reference is None
    assert result.content_to_send == text


def test_quote_ignores_attachment_blocks():
    text = "> Attachments: [file.png](url)"
    result = process_quoted_content(text, QUOTE_HISTORY)
    assert result.reply_reference is None
    assert result.content_to_send == text


def test_quote_requires_message_id():
    result = process_quoted_content("> Original message content\nMy reply", ["Original message content"])
    assert result.reply_reference is None


def test_quote_flags_duplicate_reply():
    result = process_quoted_content("> Original message content\nAnother original message", QUOTE_HISTORY)
    assert result.reply_reference == "msg1"
    assert result.is_duplicate is True


def test_quote_empty_remainder_falls_back_to_space():
    result = process_quoted_content("> Original message content\n", QUOTE_HISTORY)
    assert result.reply_reference == "msg1"
    assert result.content_to_send == " "


def test_quote_ignores_attachment_footer_of_prior_message():
    prior = [PriorMessage(id="msg1", content="Message with attachments\n\nAttachments: [file.png](url)")]
    result = process_quoted_content("> Message with attachments\nMy reply", prior)
    assert result.reply_reference == "msg1"
    assert result.content_to_send == "My reply"
