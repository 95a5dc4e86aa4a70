#!/usr/bin/env python3
"""
Tests for markdown link normalization in assistant replies
"""
from ragbot.models.knowledge import KnowledgeEntry
from ragbot.utils.content_normalizer import normalize_assistant_reply


def test_placeholder_link_uses_knowledge_source():
    entries = [KnowledgeEntry(title="Doc", source="https://x.test/a")]

    result = normalize_assistant_reply("See [Label](#) for details.", entries)

    assert "Label\nhttps://x.test/a" in result
    assert "](" not in result


def test_placeholder_link_without_candidates_keeps_label():
    assert normalize_assistant_reply("[Label](#)", []) == "Label"


def test_text_without_links_is_unchanged():
    text = "No links here (really)."
    assert normalize_assistant_reply(text, []) is text
    assert normalize_assistant_reply("Only [brackets] here", []) == "Only [brackets] here"


def test_candidates_are_consumed_in_retrieval_order():
    entries = [
        KnowledgeEntry(title="one", source="https://x.test/1"),
        KnowledgeEntry(title="skip", source="unknown"),
        KnowledgeEntry(title="none", source=None),
        KnowledgeEntry(title="two", source="  http://x.test/2  "),
    ]

    result = normalize_assistant_reply("[A](#) [B]() [C](#section)", entries)

    assert result == "A\nhttps://x.test/1 B\nhttp://x.test/2 C"


def test_absolute_and_www_targets():
    result = normalize_assistant_reply("[Site](https://example.com/page.) and [W](www.example.org)", [])

    assert result == "Site\nhttps://example.com/page and W\nhttps://www.example.org"


def test_embedded_url_in_target_is_extracted():
    result = normalize_assistant_reply("[Docs](see https://docs.test/x here)", [])

    assert result == "Docs\nhttps://docs.test/x"


def test_unresolvable_target_drops_link_syntax():
    assert normalize_assistant_reply("Read [the  guide ](guide.pdf)!", []) == "Read the  guide!"


def test_label_whitespace_is_collapsed():
    result = normalize_assistant_reply("[Multi\nline   label](https://x.test)", [])

    assert result == "Multi line label\nhttps://x.test"


def test_empty_label_emits_bare_url():
    assert normalize_assistant_reply("[ ](https://x.test/a)", []) == "https://x.test/a"


def test_duplicate_links_are_replaced_by_position():
    entries = [
        KnowledgeEntry(title="first", source="https://x.test/1"),
        KnowledgeEntry(title="second", source="https://x.test/2"),
    ]

    result = normalize_assistant_reply("[Info](#) then [Info](#)", entries)

    assert result == "Info\nhttps://x.test/1 then Info\nhttps://x.test/2"
