import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone

import pytest

from errors import ERROR_PREFIX_SUMMARY_FAILED
from models import CachedItem
from publisher import RSSPublisher, decorate_html, is_error

CONTENT_NS = "{http://purl.org/rss/1.0/modules/content/}encoded"
CREATED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def cached(n, summary="A summary", comments="", created=None):
    created = created or CREATED + timedelta(minutes=n)
    return CachedItem(
        guid=f"https://example.com/{n}",
        title=f"Title {n}",
        link=f"https://example.com/{n}",
        comments=comments,
        author="alice",
        publish_date="",
        description=f"Description {n}",
        summary=summary,
        marked_as_read=False,
        created_at=created,
        updated_at=created,
    )


@pytest.mark.parametrize(
    "text, expected",
    [
        ("line 1\nline 2\n\nlast line\n", "line 1<br>line 2<br><br>last line<br>"),
        ("following **text** should be bolded! **", "following <b>text</b> should be bolded! **"),
        (
            "text with <html tags> should be **escaped** first",
            "text with &lt;html tags&gt; should be <b>escaped</b> first",
        ),
        ("**bold text\nover multiple\nlines**", "<b>bold text<br>over multiple<br>lines</b>"),
    ],
)
def test_decorate_html(text, expected):
    assert decorate_html(text) == expected


def test_error_bodies_are_not_escaped():
    body = f"{ERROR_PREFIX_SUMMARY_FAILED}: **boom**\n\n<p>original</p>"
    assert is_error(body)
    assert decorate_html(body) == f"{ERROR_PREFIX_SUMMARY_FAILED}: <b>boom</b>\n\n<p>original</p>"


def publish(items, **kwargs):
    publisher = RSSPublisher(
        title="Test feed",
        link="https://example.com",
        description="Testing",
        author="meinside",
        email="email@domain.com",
        **kwargs,
    )
    return ET.fromstring(publisher.publish_xml(items))


def test_channel_metadata():
    channel = publish([]).find("channel")
    assert channel.findtext("title") == "Test feed"
    assert channel.findtext("link") == "https://example.com"
    assert channel.findtext("description") == "Testing"


def test_unsummarized_items_are_omitted_and_order_is_kept():
    root = publish([cached(3), cached(2, summary=""), cached(1)])
    guids = [it.findtext("guid") for it in root.iter("item")]
    assert guids == ["https://example.com/3", "https://example.com/1"]


def test_successful_items_link_to_comments_or_guid():
    root = publish([cached(2, comments="https://news.example.com/2"), cached(1)])
    contents = [it.findtext(CONTENT_NS) for it in root.iter("item")]

    assert contents[0] == (
        'A summary<br><br>Comments: <a href="https://news.example.com/2">https://news.example.com/2</a>'
    )
    assert contents[1] == 'A summary<br><br>GUID: <a href="https://example.com/1">https://example.com/1</a>'


def test_failed_items_have_no_footer():
    summary = f"{ERROR_PREFIX_SUMMARY_FAILED}: timeout\n\n<p>Description 1</p>"
    root = publish([cached(1, summary=summary, comments="https://news.example.com/1")])
    content = next(root.iter("item")).findtext(CONTENT_NS)
    assert "Comments:" not in content
    assert content.endswith("<p>Description 1</p>")


def test_item_fields():
    item = next(publish([cached(1)]).iter("item"))
    assert item.findtext("title") == "Title 1"
    assert item.findtext("link") == "https://example.com/1"
    assert item.findtext("description") == "Description 1"
    assert item.findtext("pubDate") == "Sat, 01 Mar 2025 12:01:00 +0000"


def test_control_characters_are_stripped():
    root = publish([cached(1, summary="bad\x00 \x07char")])
    assert "bad char" in next(root.iter("item")).findtext(CONTENT_NS)
