import pytest

from kynews.services.errors import ParseError
from kynews.services.feed_parser import parse_date, parse_feed, parse_listing_page

RSS_SAMPLE = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>Example News</title>
    <link>https://news.example.com/</link>
    <item>
      <title>County approves budget</title>
      <link>https://news.example.com/budget</link>
      <guid isPermaLink="false">budget-1</guid>
      <description>&lt;p&gt;The fiscal court voted &lt;b&gt;4-1&lt;/b&gt;.&lt;/p&gt;</description>
      <pubDate>Mon, 06 Jan 2025 15:30:00 GMT</pubDate>
      <dc:creator>Jane Reporter</dc:creator>
      <enclosure url="https://cdn.example.com/budget.jpg" type="image/jpeg" length="1000"/>
    </item>
    <item>
      <link>https://news.example.com/untitled</link>
      <media:content url="https://cdn.example.com/media.jpg" medium="image"/>
    </item>
    <item>
      <title>Inline image story</title>
      <guid isPermaLink="true">https://news.example.com/inline</guid>
      <description>&lt;img src="https://cdn.example.com/inline.png"&gt; Story text</description>
    </item>
  </channel>
</rss>
"""

ATOM_SAMPLE = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <id>urn:example:feed</id>
  <updated>2025-02-01T10:00:00Z</updated>
  <entry>
    <title>Atom story</title>
    <id>urn:example:1</id>
    <link rel="related" href="https://other.example.com/related"/>
    <link rel="alternate" href="https://atom.example.com/story"/>
    <updated>2025-02-01T10:00:00Z</updated>
    <summary>Short summary</summary>
    <author><name>Sam Writer</name></author>
  </entry>
</feed>
"""


def test_rss_entries_are_normalized_in_order() -> None:
    entries = parse_feed(RSS_SAMPLE)

    assert [entry.link for entry in entries] == [
        "https://news.example.com/budget",
        "https://news.example.com/untitled",
        "https://news.example.com/inline",
    ]
    first = entries[0]
    assert first.title == "County approves budget"
    assert first.guid == "budget-1"
    assert first.description == "The fiscal court voted 4-1 ."
    assert first.published_at == "2025-01-06T15:30:00+00:00"
    assert first.author == "Jane Reporter"
    assert first.image == "https://cdn.example.com/budget.jpg"


def test_missing_title_gets_placeholder_and_media_image() -> None:
    entry = parse_feed(RSS_SAMPLE)[1]

    assert entry.title == "(untitled)"
    assert entry.image == "https://cdn.example.com/media.jpg"


def test_guid_link_and_inline_image_fallbacks() -> None:
    entry = parse_feed(RSS_SAMPLE)[2]

    assert entry.link == "https://news.example.com/inline"
    assert entry.image == "https://cdn.example.com/inline.png"
    assert entry.description == "Story text"


def test_atom_prefers_alternate_link() -> None:
    entries = parse_feed(ATOM_SAMPLE)

    assert len(entries) == 1
    assert entries[0].link == "https://atom.example.com/story"
    assert entries[0].author == "Sam Writer"
    assert entries[0].published_at == "2025-02-01T10:00:00+00:00"


def test_parsing_is_restartable() -> None:
    assert parse_feed(RSS_SAMPLE) == parse_feed(RSS_SAMPLE)


def test_malformed_payload_raises_parse_error() -> None:
    with pytest.raises(ParseError):
        parse_feed(b"this is not a feed at all")


def test_empty_but_valid_feed_has_no_entries() -> None:
    payload = b'<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel><title>Empty</title></channel></rss>'

    assert parse_feed(payload) == []


def test_parse_date_accepts_rfc822_and_iso() -> None:
    assert parse_date("Tue, 07 Jan 2025 08:00:00 -0500") == "2025-01-07T13:00:00+00:00"
    assert parse_date("2025-01-07T08:00:00Z") == "2025-01-07T08:00:00+00:00"
    assert parse_date("not a date") is None


def test_listing_page_links_are_absolute_and_unique() -> None:
    html = """
    <html><body>
      <article><a href="/news/story-1">Story one headline</a></article>
      <article><a href="/news/story-1">Story one again</a></article>
      <h2><a href="https://paper.example.com/news/story-2">Story two</a></h2>
      <h2><a href="mailto:tips@paper.example.com">Send tips</a></h2>
    </body></html>
    """

    entries = parse_listing_page(html, "https://paper.example.com/news/")

    assert [(entry.link, entry.title) for entry in entries] == [
        ("https://paper.example.com/news/story-1", "Story one headline"),
        ("https://paper.example.com/news/story-2", "Story two"),
    ]


def test_truncated_feed_raises_even_when_entries_were_recovered() -> None:
    payload = RSS_SAMPLE[: RSS_SAMPLE.index(b"</item>") + len(b"</item>")]

    with pytest.raises(ParseError, match="Malformed feed XML"):
        parse_feed(payload)


def test_listing_page_skips_unparseable_links() -> None:
    html = """
    <article><a href="http://[oops/story">Broken link</a></article>
    <article><a href="/news/story-3">Story three</a></article>
    """

    entries = parse_listing_page(html, "https://paper.example.com/news/")

    assert [entry.link for entry in entries] == ["https://paper.example.com/news/story-3"]
