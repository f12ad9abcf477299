"""Unit tests for render_labels module - bag label drawing and archiving.

Tests cover:
- Greedy disclaimer wrapping within the column width
- Label page geometry and printed text
- Deterministic label filenames and barcode URLs
- Image fetching, validation and logo caching
- generate_and_upload_label never raising

Real-world significance:
- Labels are printed on 4x6 thermal stock; the page size must be exact
- The barcode is the only link from a bag back to its order
- One failed label must not abort the other bags
"""

from __future__ import annotations

import io
from datetime import date
from unittest.mock import MagicMock

import pytest
import requests
from PIL import Image
from pypdf import PdfReader
from reportlab.pdfbase.pdfmetrics import stringWidth

from fulfillment import render_labels
from fulfillment.data_models import LabelParams
from fulfillment.errors import UpstreamError
from fulfillment.render_labels import (
    DEFAULT_DISCLAIMER,
    ImageFetcher,
    LabelRenderer,
    LabelSettings,
)
from tests.fixtures.sample_input import FORM_ID, FakeImageFetcher, FlakyArchive, make_png_bytes


def label_params(index: int = 1, total: int = 2, **overrides) -> LabelParams:
    values = dict(
        form_id=FORM_ID,
        first_name="Mary",
        last_name="Bantin",
        pickup_window="Saturday 10am-12pm",
        date_text="10/19/2026",
        index=index,
        total=total,
    )
    values.update(overrides)
    return LabelParams(**values)


def png_image() -> Image.Image:
    return Image.open(io.BytesIO(make_png_bytes()))


@pytest.mark.unit
class TestWrapText:
    """Unit tests for wrap_text function."""

    def test_lines_fit_column(self) -> None:
        """Verify every wrapped disclaimer line fits the 120pt column.

        Real-world significance:
        - Overflowing text would print over the logo or off the label
        """
        lines = render_labels.wrap_text(DEFAULT_DISCLAIMER, 120, "Helvetica", 7)

        assert len(lines) > 1
        for line in lines:
            assert stringWidth(line, "Helvetica", 7) <= 120

    def test_words_preserved_in_order(self) -> None:
        lines = render_labels.wrap_text(DEFAULT_DISCLAIMER, 120, "Helvetica", 7)

        assert " ".join(lines).split() == DEFAULT_DISCLAIMER.split()

    def test_lines_are_greedy(self) -> None:
        """Verify no line could have taken the next line's first word."""
        lines = render_labels.wrap_text(DEFAULT_DISCLAIMER, 120, "Helvetica", 7)

        for current, following in zip(lines, lines[1:]):
            candidate = f"{current} {following.split()[0]}"
            assert stringWidth(candidate, "Helvetica", 7) > 120

    def test_overlong_word_gets_own_line(self) -> None:
        lines = render_labels.wrap_text("a " + "x" * 80 + " b", 120, "Helvetica", 7)

        assert lines == ["a", "x" * 80, "b"]

    def test_empty_text(self) -> None:
        assert render_labels.wrap_text("   ", 120, "Helvetica", 7) == []


@pytest.mark.unit
class TestRenderLabel:
    """Unit tests for render_label function."""

    def test_single_4x6_page(self) -> None:
        pdf_bytes = render_labels.render_label(label_params(), png_image(), png_image(), LabelSettings())

        reader = PdfReader(io.BytesIO(pdf_bytes))
        assert len(reader.pages) == 1
        page = reader.pages[0]
        assert float(page.mediabox.width) == 288
        assert float(page.mediabox.height) == 432

    def test_printed_text(self) -> None:
        """Verify name, bag position, date and pickup window are printed.

        Real-world significance:
        - Volunteers match bags to clients by initial and last name
        """
        pdf_bytes = render_labels.render_label(
            label_params(index=2, total=3), png_image(), png_image(), LabelSettings()
        )

        text = PdfReader(io.BytesIO(pdf_bytes)).pages[0].extract_text()
        assert "Pet Food" in text
        assert "Pantry Pickup" in text
        assert "Name: M Bantin" in text
        assert "Item/Bag: 2 of 3" in text
        assert "Date Prepared: 10/19/2026" in text
        assert "Pickup Window: Saturday 10am-12pm" in text


@pytest.mark.unit
class TestNamingHelpers:
    """Unit tests for filenames, barcode URLs, names and dates."""

    def test_label_filename(self) -> None:
        assert render_labels.label_filename(label_params(index=1, total=2)) == (
            "BagLabel_Bantin_123456789012_1of2.pdf"
        )

    def test_label_filename_blank_last_name(self) -> None:
        assert render_labels.label_filename(label_params(last_name="")) == (
            "BagLabel_Last_123456789012_1of2.pdf"
        )

    def test_label_filename_custom_template(self) -> None:
        name = render_labels.label_filename(label_params(), "{form_id}-{index}.pdf")

        assert name == "123456789012-1.pdf"

    def test_barcode_url_encodes_form_id(self) -> None:
        url = render_labels.barcode_url(FORM_ID, LabelSettings())

        assert url.startswith("https://quickchart.io/barcode?")
        assert f"text={FORM_ID}" in url
        assert "type=code128" in url

    def test_display_name(self) -> None:
        assert render_labels.display_name("Mary", "Bantin") == "M Bantin"
        assert render_labels.display_name("", "Bantin") == " Bantin"

    def test_format_prepared_date(self) -> None:
        """Verify the US short date format used on printed labels."""
        assert render_labels.format_prepared_date(date(2026, 3, 7), LabelSettings()) == "3/7/2026"

    def test_settings_from_config(self, default_config) -> None:
        settings = LabelSettings.from_config(default_config)

        assert settings.title_lines == ("Pet Food", "Pantry Pickup")
        assert settings.label_folder_id == default_config["archive"]["label_folder_id"]
        assert settings.barcode_symbology == "code128"


@pytest.mark.unit
class TestImageFetcher:
    """Unit tests for ImageFetcher."""

    def make_session(self, content: bytes) -> MagicMock:
        response = MagicMock()
        response.content = content
        session = MagicMock()
        session.get.return_value = response
        return session

    def test_fetch_decodes_image(self) -> None:
        fetcher = ImageFetcher(self.make_session(make_png_bytes((30, 12))), timeout=5)

        image = fetcher.fetch("https://assets.invalid/barcode.png")

        assert image.size == (30, 12)

    def test_non_image_rejected(self) -> None:
        """Verify an HTML error page is not drawn as a barcode.

        Real-world significance:
        - A blank barcode would make the bag unscannable at pickup
        """
        fetcher = ImageFetcher(self.make_session(b"<html>rate limited</html>"))

        with pytest.raises(UpstreamError, match="not an image"):
            fetcher.fetch("https://assets.invalid/barcode.png")

    def test_http_failure(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(UpstreamError, match="Image fetch failed"):
            ImageFetcher(session).fetch("https://assets.invalid/logo.png")

    def test_cached_fetch_downloads_once(self) -> None:
        session = self.make_session(make_png_bytes())
        fetcher = ImageFetcher(session)

        fetcher.fetch("https://assets.invalid/logo.png", cache=True)
        fetcher.fetch("https://assets.invalid/logo.png", cache=True)
        fetcher.fetch("https://assets.invalid/barcode.png")
        fetcher.fetch("https://assets.invalid/barcode.png")

        assert session.get.call_count == 3


@pytest.mark.unit
class TestGenerateAndUploadLabel:
    """Unit tests for LabelRenderer.generate_and_upload_label."""

    def test_success_archives_named_label(self, renderer: LabelRenderer, archive: FlakyArchive) -> None:
        result = renderer.generate_and_upload_label(label_params(index=1, total=2))

        assert result.ok is True
        assert result.error is None
        stored = archive.documents[result.document.id]
        assert stored["name"] == "BagLabel_Bantin_123456789012_1of2.pdf"
        assert stored["parent"] == "label-folder"
        assert stored["mime_type"] == "application/pdf"
        assert stored["data"].startswith(b"%PDF")

    def test_barcode_failure_reported_not_raised(self, archive: FlakyArchive, label_settings: LabelSettings) -> None:
        """Verify a barcode service outage becomes a failed result.

        Real-world significance:
        - Other bags in the batch still get labels
        """
        renderer = LabelRenderer(archive, FakeImageFetcher(fail_on=["quickchart"]), label_settings)

        result = renderer.generate_and_upload_label(label_params())

        assert result.ok is False
        assert "Image fetch failed" in result.error
        assert archive.documents == {}

    def test_invalid_image_reported_not_raised(self, archive: FlakyArchive, label_settings: LabelSettings) -> None:
        renderer = LabelRenderer(archive, FakeImageFetcher(garbage_on=["logo"]), label_settings)

        result = renderer.generate_and_upload_label(label_params())

        assert result.ok is False
        assert "not an image" in result.error

    def test_archive_failure_reported_not_raised(self, image_fetcher: FakeImageFetcher, label_settings: LabelSettings) -> None:
        archive = FlakyArchive(fail_names=["_2of2"])
        renderer = LabelRenderer(archive, image_fetcher, label_settings)

        first = renderer.generate_and_upload_label(label_params(index=1, total=2))
        second = renderer.generate_and_upload_label(label_params(index=2, total=2))

        assert first.ok is True
        assert second.ok is False
        assert (second.index, second.total) == (2, 2)
        assert "quota exceeded" in second.error
