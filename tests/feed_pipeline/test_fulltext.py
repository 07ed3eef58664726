"""Tests for full-text extraction and its failure cooldown."""

from unittest.mock import MagicMock, patch

import pytest

NOW = 1_714_989_600
ARTICLE = "This is the main article text. " * 20


@pytest.fixture(autouse=True)
def clean_cache():
    from feed_pipeline.fulltext import clear_failure_cache

    clear_failure_cache()
    yield
    clear_failure_cache()


def _html_response(status_code=200, content_type="text/html; charset=utf-8", body=b"<html></html>"):
    response = MagicMock()
    response.status_code = status_code
    response.headers = {"Content-Type": content_type}
    response.encoding = "utf-8"
    response.iter_content.return_value = [body]
    response.__enter__.return_value = response
    return response


class TestCacheKey:
    def test_normalizes(self):
        from feed_pipeline.fulltext import normalize_cache_key

        assert normalize_cache_key("https://Example.COM/a/b/?x=1") == "https://example.com/a/b?x=1"
        assert normalize_cache_key("https://example.com/a") == normalize_cache_key("https://EXAMPLE.com/a/")


class TestExtractText:
    """Tests for extract_text (network and trafilatura mocked)."""

    def test_returns_extracted_text(self):
        from feed_pipeline.fulltext import extract_text

        with patch("feed_pipeline.fulltext.requests.get", return_value=_html_response()), \
                patch("feed_pipeline.fulltext.trafilatura.extract", return_value=ARTICLE):
            text = extract_text("https://example.com/story", now=NOW)

        assert text == ARTICLE.strip()

    def test_short_text_starts_cooldown(self):
        from feed_pipeline.fulltext import extract_text, is_in_failure_cooldown

        with patch("feed_pipeline.fulltext.requests.get", return_value=_html_response()) as mock_get, \
                patch("feed_pipeline.fulltext.trafilatura.extract", return_value="Too short"):
            assert extract_text("https://example.com/story", now=NOW) is None
            assert extract_text("https://example.com/story", now=NOW + 60) is None

        assert mock_get.call_count == 1
        assert is_in_failure_cooldown("https://example.com/story", NOW + 60)
        assert not is_in_failure_cooldown("https://example.com/story", NOW + 6 * 3600)

    def test_non_html_skipped(self):
        from feed_pipeline.fulltext import extract_text

        response = _html_response(content_type="application/pdf")
        with patch("feed_pipeline.fulltext.requests.get", return_value=response), \
                patch("feed_pipeline.fulltext.trafilatura.extract") as mock_extract:
            assert extract_text("https://example.com/paper.pdf", now=NOW) is None

        mock_extract.assert_not_called()

    def test_http_error(self):
        from feed_pipeline.fulltext import extract_text, is_in_failure_cooldown

        with patch("feed_pipeline.fulltext.requests.get", return_value=_html_response(status_code=404)):
            assert extract_text("https://example.com/gone", now=NOW) is None

        assert is_in_failure_cooldown("https://example.com/gone", NOW)

    def test_private_url_not_fetched(self):
        from feed_pipeline.fulltext import extract_text

        with patch("feed_pipeline.fulltext.requests.get") as mock_get:
            assert extract_text("http://10.0.0.5/admin", now=NOW) is None

        mock_get.assert_not_called()

    def test_redirect_to_private_host_not_followed(self):
        """Test that an article redirecting to a loopback address fails and enters cooldown."""
        from feed_pipeline.fulltext import extract_text, is_in_failure_cooldown

        redirect = _html_response(status_code=302)
        redirect.headers = {"Location": "http://127.0.0.1/internal"}
        with patch("feed_pipeline.fulltext.requests.get", side_effect=[redirect, _html_response()]) as mock_get:
            assert extract_text("https://example.com/story", now=NOW) is None

        assert mock_get.call_count == 1
        assert is_in_failure_cooldown("https://example.com/story", NOW)


class TestExtractFulltextForItems:
    def test_stores_text(self):
        from feed_pipeline.fulltext import extract_fulltext_for_items
        from feed_pipeline.models import Item

        item = Item(account_id="acct", feed_id=1, url="https://example.com/story",
                    canonical_url="https://example.com/story", title="Story", published_at=0, id=7)
        with patch("feed_pipeline.fulltext.extract_text", return_value=ARTICLE), \
                patch("feed_pipeline.fulltext.update_item_extracted_text") as mock_update:
            stored = extract_fulltext_for_items([item], now=NOW)

        assert stored == 1
        mock_update.assert_called_once_with(7, ARTICLE, NOW)
        assert item.extracted_at == NOW
