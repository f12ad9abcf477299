"""Render 4x6 "Pet Food Pantry Pickup" bag labels and archive them.

Each label is one 288x432 pt page (4x6 in at 72 dpi) drawn with ReportLab
at fixed positions:

- logo (top left) and the title lines beside it;
- the disclaimer paragraph, greedily word-wrapped into a fixed column;
- client initial + last name, "Item/Bag: i of n", preparation date and
  pickup window;
- a Code 128 barcode of the Form ID across the bottom. The barcode image
  comes from a remote generator and is the only element tying the printed
  label back to the intake record.

**Error Handling:**
- ``generate_and_upload_label`` never raises. Image fetches, drawing and
  the archive upload are all caught and reported as a failed LabelResult so
  one bad label does not abort the rest of the batch.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests
from babel.dates import format_date
from PIL import Image, UnidentifiedImageError
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .archive import PDF_MIME_TYPE, ArchiveStore
from .data_models import LabelParams, LabelResult
from .errors import UpstreamError
from .utils import safe_filename_part, string_or_empty, validate_and_format_template

LOG = logging.getLogger(__name__)

PAGE_WIDTH = 288
PAGE_HEIGHT = 432

FONT_REGULAR = "Helvetica"
FONT_BOLD = "Helvetica-Bold"

TITLE_X = 140
TITLE_TOP_OFFSET = 40
TITLE_PITCH = 20
TITLE_SIZE = 16

DISCLAIMER_X = 140
DISCLAIMER_TOP_OFFSET = 110
DISCLAIMER_WIDTH = 120
DISCLAIMER_SIZE = 7
DISCLAIMER_LINE_HEIGHT = 9

LOGO_BOX = (25, PAGE_HEIGHT - 120, 95, 95)
BARCODE_BOX = (20, 25, 250, 60)

DEFAULT_DISCLAIMER = (
    "These items have been provided as a good-faith effort to assist during a "
    "temporary need or crisis. The SPCA is not legally liable for the "
    "distribution, use, or consumption of these items. Items not picked up "
    "within 7 days of the date below will be repurposed for other clients."
)
DEFAULT_BARCODE_URL = (
    "https://quickchart.io/barcode?text={text}&type={symbology}"
    "&format=png&width=250&height=60&margin=0"
)
DEFAULT_FILENAME_TEMPLATE = "BagLabel_{last_name}_{form_id}_{index}of{total}.pdf"
FILENAME_FIELDS = {"last_name", "first_name", "form_id", "index", "total"}


@dataclass(frozen=True)
class LabelSettings:
    """Static label content and asset locations (labels section of the config)."""

    logo_url: str = ""
    barcode_url_template: str = DEFAULT_BARCODE_URL
    barcode_symbology: str = "code128"
    title_lines: Sequence[str] = ("Pet Food", "Pantry Pickup")
    disclaimer: str = DEFAULT_DISCLAIMER
    date_locale: str = "en_US"
    date_pattern: str = "M/d/yyyy"
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    label_folder_id: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "LabelSettings":
        labels = config.get("labels", {})
        defaults = cls()
        return cls(
            logo_url=labels.get("logo_url", defaults.logo_url),
            barcode_url_template=labels.get("barcode_url_template", defaults.barcode_url_template),
            barcode_symbology=labels.get("barcode_symbology", defaults.barcode_symbology),
            title_lines=tuple(labels.get("title_lines", defaults.title_lines)),
            disclaimer=labels.get("disclaimer", defaults.disclaimer),
            date_locale=labels.get("date_locale", defaults.date_locale),
            date_pattern=labels.get("date_pattern", defaults.date_pattern),
            filename_template=labels.get("filename_template", defaults.filename_template),
            label_folder_id=config.get("archive", {}).get("label_folder_id"),
        )


def format_prepared_date(today: date, settings: LabelSettings) -> str:
    """Format the preparation date, e.g. '10/19/2026' for en_US."""
    return format_date(today, format=settings.date_pattern, locale=settings.date_locale)


def barcode_url(form_id: str, settings: LabelSettings) -> str:
    return settings.barcode_url_template.format(
        text=quote(form_id, safe=""),
        symbology=quote(settings.barcode_symbology, safe=""),
    )


def label_filename(params: LabelParams, template: str = DEFAULT_FILENAME_TEMPLATE) -> str:
    """Deterministic archive name for one label, e.g. BagLabel_Bantin_123456789012_1of2.pdf."""
    context = {
        "last_name": safe_filename_part(params.last_name, "Last"),
        "first_name": safe_filename_part(params.first_name, "First"),
        "form_id": params.form_id,
        "index": params.index,
        "total": params.total,
    }
    return validate_and_format_template(template, context, allowed_fields=FILENAME_FIELDS)


def display_name(first_name: str, last_name: str) -> str:
    """First initial plus last name, as printed on the label."""
    first = string_or_empty(first_name)
    initial = first[0] if first else ""
    return f"{initial} {string_or_empty(last_name)}"


def wrap_text(text: str, width: float, font_name: str, font_size: float) -> List[str]:
    """Greedily wrap text into lines no wider than ``width``.

    Words are accumulated while the rendered width of the line stays within
    the column; the word that would overflow starts the next line. A single
    word wider than the column gets a line of its own.

    Examples
    --------
    >>> wrap_text("one two", 1000, "Helvetica", 7)
    ['one two']
    """
    lines: List[str] = []
    current: List[str] = []
    for word in text.split():
        candidate = " ".join(current + [word])
        if current and stringWidth(candidate, font_name, font_size) > width:
            lines.append(" ".join(current))
            current = [word]
        else:
            current.append(word)
    if current:
        lines.append(" ".join(current))
    return lines


class ImageFetcher:
    """Downloads and decodes label images; the logo is cached per instance.

    Parameters
    ----------
    session : requests.Session, optional
        Session used for image downloads (unauthenticated).
    timeout : float
        Per-request timeout in seconds.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 60):
        self.session = session or requests.Session()
        self.timeout = timeout
        self._cache: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def fetch_bytes(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamError(f"Image fetch failed for {url}: {exc}") from exc
        return response.content

    def fetch(self, url: str, cache: bool = False) -> Image.Image:
        """Return the decoded image at url; raises UpstreamError when unusable."""
        data: Optional[bytes] = None
        if cache:
            with self._lock:
                data = self._cache.get(url)
        if data is None:
            data = self.fetch_bytes(url)
            if cache:
                with self._lock:
                    self._cache[url] = data
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise UpstreamError(f"Response from {url} is not an image: {exc}") from exc
        return image


def draw_label(
    pdf: canvas.Canvas,
    params: LabelParams,
    logo: Image.Image,
    barcode: Image.Image,
    settings: LabelSettings,
) -> None:
    """Draw one label onto the current canvas page."""
    x, y, width, height = LOGO_BOX
    pdf.drawImage(ImageReader(logo), x, y, width=width, height=height, mask="auto")

    pdf.setFont(FONT_BOLD, TITLE_SIZE)
    for offset, line in enumerate(settings.title_lines):
        pdf.drawString(TITLE_X, PAGE_HEIGHT - TITLE_TOP_OFFSET - offset * TITLE_PITCH, line)

    pdf.setFont(FONT_REGULAR, DISCLAIMER_SIZE)
    cursor_y = PAGE_HEIGHT - DISCLAIMER_TOP_OFFSET
    for line in wrap_text(settings.disclaimer, DISCLAIMER_WIDTH, FONT_REGULAR, DISCLAIMER_SIZE):
        pdf.drawString(DISCLAIMER_X, cursor_y, line)
        cursor_y -= DISCLAIMER_LINE_HEIGHT

    pdf.setFont(FONT_BOLD, 16)
    pdf.drawString(40, 250, f"Name: {display_name(params.first_name, params.last_name)}")
    pdf.setFont(FONT_REGULAR, 12)
    pdf.drawString(80, 225, f"Item/Bag: {params.index} of {params.total}")
    pdf.drawString(60, 200, f"Date Prepared: {params.date_text}")
    pdf.drawString(30, 160, f"Pickup Window: {params.pickup_window}")

    x, y, width, height = BARCODE_BOX
    pdf.drawImage(ImageReader(barcode), x, y, width=width, height=height)


def render_label(
    params: LabelParams,
    logo: Image.Image,
    barcode: Image.Image,
    settings: LabelSettings,
) -> bytes:
    """Render one label to PDF bytes."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(PAGE_WIDTH, PAGE_HEIGHT))
    pdf.setTitle(f"Bag label {params.index} of {params.total} ({params.form_id})")
    draw_label(pdf, params, logo, barcode, settings)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@dataclass
class LabelRenderer:
    """Renders labels and uploads them to the archive.

    Attributes
    ----------
    archive : ArchiveStore
        Destination for rendered labels.
    fetcher : ImageFetcher
        Image source for the logo (cached) and barcodes.
    settings : LabelSettings
        Label content and destination folder.
    """

    archive: ArchiveStore
    fetcher: ImageFetcher
    settings: LabelSettings = field(default_factory=LabelSettings)

    def generate_and_upload_label(self, params: LabelParams) -> LabelResult:
        """Render one label and archive it. Never raises.

        Returns
        -------
        LabelResult
            ``ok=True`` with the archived document, or ``ok=False`` with the
            error message.
        """
        try:
            LOG.info("Starting label %s of %s for %s", params.index, params.total, params.form_id)
            logo = self.fetcher.fetch(self.settings.logo_url, cache=True)
            barcode = self.fetcher.fetch(barcode_url(params.form_id, self.settings))
            pdf_bytes = render_label(params, logo, barcode, self.settings)

            name = label_filename(params, self.settings.filename_template)
            document = self.archive.create(
                name, PDF_MIME_TYPE, pdf_bytes, self.settings.label_folder_id
            )
        except Exception as exc:
            LOG.warning(
                "Label %s of %s for %s failed: %s",
                params.index,
                params.total,
                params.form_id,
                exc,
            )
            return LabelResult(
                index=params.index, total=params.total, ok=False, error=str(exc)
            )

        LOG.info("Label %s of %s uploaded as %s", params.index, params.total, document.id)
        return LabelResult(index=params.index, total=params.total, ok=True, document=document)
