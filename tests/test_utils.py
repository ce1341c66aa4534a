import pytest

from utils import (
    REDACTED,
    RetryHelper,
    clean_html_to_markdown,
    is_youtube_url,
    mask_secret,
    normalize_youtube_url,
    redact_text,
    remove_consecutive_empty_lines,
)


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtube.com/watch?v=dQw4w9WgXcQ&list=PL123",
        "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://music.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/shorts/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ?autoplay=1",
        "https://www.youtube-nocookie.com/embed/dQw4w9WgXcQ",
        "https://www.youtube.com/live/dQw4w9WgXcQ",
    ],
)
def test_youtube_urls_are_normalized(url):
    assert is_youtube_url(url)
    assert normalize_youtube_url(url) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/",
        "https://www.youtube.com/@channel",
        "https://example.com/watch?v=dQw4w9WgXcQ",
        "https://notyoutube.com/watch?v=dQw4w9WgXcQ",
    ],
)
def test_non_video_urls_pass_through(url):
    assert not is_youtube_url(url)
    assert normalize_youtube_url(url) == url


def test_remove_consecutive_empty_lines():
    assert remove_consecutive_empty_lines("a  \n\n\n  b\n\nc") == "a\n  b\nc"


def test_redact_text():
    text = "key1 and key2 and key1 again"
    assert redact_text(text, ["key1", "", "key2"]) == f"{REDACTED} and {REDACTED} and {REDACTED} again"


def test_mask_secret():
    assert mask_secret(None) == "<missing>"
    assert mask_secret("abcdefghijkl") == "abcd***ijkl"


def test_retry_helper_backoff_is_capped():
    helper = RetryHelper(max_retries=5, base_delay=1.0, max_delay=5.0)
    assert [helper.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_clean_html_to_markdown_resolves_relative_urls():
    html = '<p>See <a href="/post">this</a> <img src="img.png"></p><script>x()</script>'
    markdown = clean_html_to_markdown(html, base_url="https://example.com/blog/")
    assert "[this](https://example.com/post)" in markdown
    assert "https://example.com/blog/img.png" in markdown
    assert "x()" not in markdown
