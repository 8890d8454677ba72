from __future__ import annotations

import feedparser

from services.rss_normalization import detect_feed_type, normalize_feed_entries

RSS = """
<rss version="2.0">
  <channel>
    <title>Example RSS</title>
    <item>
      <title>Second item</title>
      <link>https://example.com/2</link>
      <description><![CDATA[<p>Hello &amp; goodbye</p>]]></description>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>First item</title>
      <link>https://example.com/1</link>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""


def test_rss_entries_come_out_oldest_first():
    parsed = feedparser.parse(RSS)

    items, errors = normalize_feed_entries(parsed)

    assert errors == []
    assert detect_feed_type(parsed) == "rss"
    assert [i.link for i in items] == ["https://example.com/1", "https://example.com/2"]
    assert items[0].date.year == 2024 and items[0].date.tzinfo is not None
    # markup is untouched here; cleanup belongs to the pipeline
    assert "<p>" in items[1].summary
    assert items[0].summary is None


def test_atom_entry_uses_alternate_link():
    xml = """
    <feed xmlns="http://www.w3.org/2005/Atom">
      <title>Example Atom</title>
      <entry>
        <title>Atom entry</title>
        <id>tag:example.com,2024:1</id>
        <updated>2024-01-01T10:00:00Z</updated>
        <summary>Summary text</summary>
        <link rel="alternate" href="https://example.com/atom/1" />
      </entry>
    </feed>
    """
    parsed = feedparser.parse(xml)

    items, errors = normalize_feed_entries(parsed)

    assert errors == []
    assert detect_feed_type(parsed) == "atom"
    assert items[0].title == "Atom entry"
    assert items[0].link == "https://example.com/atom/1"
    assert items[0].summary == "Summary text"


def test_missing_title_is_left_empty_for_the_pipeline_to_drop():
    xml = """
    <rss version="2.0"><channel><title>x</title>
      <item><link>https://example.com/no-title</link></item>
    </channel></rss>
    """
    items, errors = normalize_feed_entries(feedparser.parse(xml))

    assert errors == []
    assert items[0].title == ""
    assert items[0].date is None


def test_corrupt_entry_yields_error_not_exception():
    parsed_feed = {"version": "rss20", "entries": [object()]}

    items, errors = normalize_feed_entries(parsed_feed)

    assert items == []
    assert len(errors) == 1
    assert "unsupported entry type" in str(errors[0])
