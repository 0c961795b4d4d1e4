from __future__ import annotations

from reelwatch.services.harvest.parser import (
    extract_detail,
    extract_duration_minutes,
    extract_listing,
)
from reelwatch.services.harvest.types import records_from_drafts
from tests.fakes import BASE_URL, listing_html

DETAIL_HTML = """
<html>
  <head>
    <meta property="og:image" content="https://cdn.example.test/abc-123/cover.jpg">
  </head>
  <body>
    <h1>ABC-123 Rainy day at the station</h1>
    <div class="info">
      <a href="/actresses/yua-mikami">Yua Mikami</a>
      <a href="/actresses/yua-mikami">Yua Mikami</a>
      <a href="/tags/drama">Drama</a>
      <a href="/genres/romance">Romance</a>
    </div>
    <video><source src="https://cdn.example.test/abc-123/preview.mp4"></video>
    <span class="duration">95分</span>
  </body>
</html>
"""


def test_script_payload_wins_over_cards() -> None:
    html = (
        "<html><head><script>window.items = ["
        '{"dvd_id":"SSIS-001","title":"a"},{"dvd_id":"abp-123"}'
        "];</script></head><body>"
        + listing_html(["IPX-100"])
        + "</body></html>"
    )

    drafts = extract_listing(html, base_url=BASE_URL)

    assert [draft.code for draft in drafts] == ["SSIS-001", "ABP-123"]
    assert drafts[0].detail_url == f"{BASE_URL}/ssis-001"


def test_script_uuid_fallback_keeps_identifier_case() -> None:
    html = '<script>var data = {"uuid":"Ab12-Cd34"};</script>'

    drafts = extract_listing(html, base_url=BASE_URL)

    assert [draft.code for draft in drafts] == ["AB12-CD34"]
    assert drafts[0].detail_url == f"{BASE_URL}/Ab12-Cd34"


def test_cards_strategy_reads_title_link_cover_and_duration() -> None:
    drafts = extract_listing(listing_html(["ABC-100", "ABC-101"]), base_url=BASE_URL)

    assert [draft.code for draft in drafts] == ["ABC-100", "ABC-101"]
    first = drafts[0]
    assert first.title == "ABC-100 sample title"
    assert first.detail_url == f"{BASE_URL}/abc-100"
    assert first.cover_url == "https://cdn.example.test/abc-100/cover.jpg"
    assert first.duration_seconds == 120 * 60


def test_card_code_falls_back_to_link_when_title_has_none() -> None:
    html = (
        '<div class="video-card"><a href="/ipx-777"><img src="/covers/ipx-777.jpg"></a>'
        "<h3>Untitled upload</h3></div>"
    )

    drafts = extract_listing(html, base_url=BASE_URL)

    assert drafts[0].code == "IPX-777"
    assert drafts[0].cover_url == f"{BASE_URL}/covers/ipx-777.jpg"


def test_links_strategy_used_when_no_cards_match() -> None:
    html = (
        "<ul>"
        '<li><a href="/abc-123"><img data-src="//cdn.example.test/abc-123.jpg"></a></li>'
        '<li><a href="/about">About</a></li>'
        '<li><a href="/def-456">DEF</a></li>'
        "</ul>"
    )

    drafts = extract_listing(html, base_url=BASE_URL)

    assert [draft.code for draft in drafts] == ["ABC-123", "DEF-456"]
    assert drafts[0].cover_url == "https://cdn.example.test/abc-123.jpg"


def test_listing_without_codes_is_empty() -> None:
    assert extract_listing("<html><body><p>Just a moment...</p></body></html>", base_url=BASE_URL) == []
    assert extract_listing("", base_url=BASE_URL) == []


def test_duplicate_drafts_collapse_to_one_record() -> None:
    drafts = extract_listing(listing_html(["ABC-100", "ABC-100", "ABC-101"]), base_url=BASE_URL)

    records = records_from_drafts(drafts)

    assert [record.code for record in records] == ["ABC-100", "ABC-101"]


def test_extract_detail_collects_metadata() -> None:
    draft = extract_detail(DETAIL_HTML, f"{BASE_URL}/abc-123", base_url=BASE_URL)
    record = draft.to_record()

    assert record is not None
    assert record.code == "ABC-123"
    assert record.title == "ABC-123 Rainy day at the station"
    assert record.actresses == "Yua Mikami"
    assert record.tags == "Drama,Romance"
    assert record.cover_url == "https://cdn.example.test/abc-123/cover.jpg"
    assert record.preview_url == "https://cdn.example.test/abc-123/preview.mp4"
    assert record.duration == 95 * 60
    assert record.detail_url == f"{BASE_URL}/abc-123"


def test_extract_detail_finds_preview_in_scripts() -> None:
    html = (
        "<h1>XYZ-001</h1>"
        '<script>player.setup({preview: "https://cdn.example.test/xyz-001/preview.mp4"})</script>'
    )

    draft = extract_detail(html, f"{BASE_URL}/xyz-001", base_url=BASE_URL)

    assert draft.preview_url == "https://cdn.example.test/xyz-001/preview.mp4"


def test_extract_detail_uses_url_when_title_lacks_code() -> None:
    draft = extract_detail("<h1>Nothing here</h1>", f"{BASE_URL}/ssis-001", base_url=BASE_URL)

    assert draft.code == "SSIS-001"
    assert draft.preview_url == ""


def test_extract_duration_minutes() -> None:
    assert extract_duration_minutes("収録時間: 120分") == 120
    assert extract_duration_minutes("95 min") == 95
    assert extract_duration_minutes("") == 0


def test_detail_title_keeps_inline_markup_in_document_order() -> None:
    html = "<h1><span>SSIS-001</span> Summer <b>special</b> edition</h1>"

    draft = extract_detail(html, f"{BASE_URL}/ssis-001", base_url=BASE_URL)

    assert draft.title == "SSIS-001 Summer special edition"
    assert draft.code == "SSIS-001"


def test_card_title_code_is_first_code_in_document_order() -> None:
    html = (
        '<div class="video-card"><a href="/ssis-001"></a>'
        '<h3><span class="code">SSIS-001</span> remaster of IPX-900</h3></div>'
    )

    drafts = extract_listing(html, base_url=BASE_URL)

    assert drafts[0].title == "SSIS-001 remaster of IPX-900"
    assert drafts[0].code == "SSIS-001"
