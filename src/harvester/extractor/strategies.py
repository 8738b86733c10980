"""
Strategy variants for the extractor.

Three kinds of strategy, tried in a fixed order by the engine:

- URL strategies build the address to load for a request.
- Form strategies put the loaded page into a results state (or confirm
  it already is one).
- Extraction strategies read records out of the resulting HTML. They are
  pure functions over the parsed document, so they can be exercised
  against saved pages without a browser.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from bs4 import BeautifulSoup, Tag
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from harvester.extractor.models import ExtractionRequest, LicenseRecord
from harvester.extractor.validation import EMAIL_PATTERN, NAME_PATTERN, PHONE_PATTERN, STATUS_PATTERN

if TYPE_CHECKING:
    from harvester.extractor.sources import SourceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UrlStrategy:
    name: str
    build: Callable[[ExtractionRequest, "SourceSpec"], str]


@dataclass(frozen=True)
class FormStrategy:
    name: str
    apply: Callable[[Page, ExtractionRequest, "SourceSpec"], Awaitable[bool]]


@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    extract: Callable[[BeautifulSoup, "SourceSpec", int], list[LicenseRecord]]


@dataclass(frozen=True)
class SearchForm:
    """Selectors for a registry's search form, tried in order."""
    location_selectors: tuple[str, ...]
    profession_selectors: tuple[str, ...]
    submit_selectors: tuple[str, ...] = (
        'input[type="submit"]',
        'button[type="submit"]',
        'input[value*="Search"]',
        'button[id*="search"]',
    )


# === URL strategies ===

def query_url(base: str, **params: str) -> Callable[[ExtractionRequest, "SourceSpec"], str]:
    """URL builder for result pages addressed by query string.

    Parameter values may reference ``{zip}`` and ``{profession}``.
    """
    def build(request: ExtractionRequest, source: "SourceSpec") -> str:
        values = {
            "zip": request.locality_code,
            "profession": source.profession_code(request.profession),
        }
        query = {key: value.format(**values) for key, value in params.items()}
        return f"{base}?{urlencode(query)}"
    return build


def fixed_url(url: str) -> Callable[[ExtractionRequest, "SourceSpec"], str]:
    def build(request: ExtractionRequest, source: "SourceSpec") -> str:
        return url
    return build


# === Form strategies ===

async def _first_element(page: Page, selectors: tuple[str, ...]):
    for selector in selectors:
        element = await page.query_selector(selector)
        if element is not None:
            return element
    return None


async def apply_direct_results(page: Page, request: ExtractionRequest, source: "SourceSpec") -> bool:
    """The URL already carried the query; accept the page as loaded."""
    content = await page.content()
    return bool(content and content.strip())


async def apply_search_form(page: Page, request: ExtractionRequest, source: "SourceSpec") -> bool:
    """Fill the registry's search form with locality and profession, then submit."""
    form = source.search_form
    if form is None:
        return False

    location_input = await _first_element(page, form.location_selectors)
    if location_input is None:
        logger.info(f"[{source.source_type}] search form: no location field")
        return False

    try:
        profession_select = await _first_element(page, form.profession_selectors)
        if profession_select is not None:
            code = source.profession_code(request.profession)
            if source.profession_select_by == "value":
                await profession_select.select_option(value=code)
            else:
                await profession_select.select_option(label=code)

        await location_input.fill(request.locality_code)

        submit = await _first_element(page, form.submit_selectors)
        if submit is None:
            logger.info(f"[{source.source_type}] search form: no submit control")
            return False
        await submit.click()
        await page.wait_for_load_state("domcontentloaded")
    except PlaywrightError as e:
        logger.warning(f"[{source.source_type}] search form interaction failed: {e}")
        return False

    return True


# === Extraction strategies ===

HEADER_FIELDS = (
    ("status", ("status",)),
    ("email", ("email", "e-mail")),
    ("phone", ("phone", "telephone")),
    ("city", ("city", "location")),
    ("company", ("company", "employer", "sponsor", "firm", "brokerage")),
    ("name", ("name", "licensee")),
    ("license", ("license", "lic #", "lic.", "number")),
)
IGNORED_HEADERS = ("type", "expir", "date", "issued")


def _cell_text(cell: Tag) -> str:
    return cell.get_text(" ", strip=True)


def _header_map(row: Tag) -> dict[str, int] | None:
    """Map record fields to column indexes if ``row`` is a header row."""
    mapping: dict[str, int] = {}
    for index, cell in enumerate(row.find_all(["th", "td"])):
        label = _cell_text(cell).lower()
        if not label or any(word in label for word in IGNORED_HEADERS):
            continue
        for field_name, keywords in HEADER_FIELDS:
            if field_name not in mapping and any(word in label for word in keywords):
                mapping[field_name] = index
                break
    if "name" in mapping:
        return mapping
    return None


def _record_from_columns(cells: list[str], columns: dict[str, int]) -> LicenseRecord | None:
    def column(field_name: str) -> str | None:
        index = columns.get(field_name)
        if index is None or index >= len(cells):
            return None
        return cells[index] or None

    name = column("name")
    if not name:
        return None
    return LicenseRecord(
        name=name,
        license_number=column("license") or "",
        license_status=column("status"),
        company=column("company"),
        city=column("city"),
        phone=column("phone"),
        email=column("email"),
    )


def _record_from_cells(cells: list[str], source: "SourceSpec") -> LicenseRecord | None:
    """Pick fields out of an unlabeled row by their shape."""
    license_number = next(
        (text for text in cells if source.license_pattern.match(text.strip().upper())), ""
    )
    status = next((text for text in cells if len(text) < 30 and STATUS_PATTERN.search(text)), None)
    name = next(
        (text for text in cells if text not in (license_number, status) and NAME_PATTERN.match(text)),
        None,
    )
    if name is None:
        return None
    return LicenseRecord(name=name, license_number=license_number, license_status=status)


def extract_result_table(soup: BeautifulSoup, source: "SourceSpec", limit: int) -> list[LicenseRecord]:
    """Rows of the first table that yields records."""
    for table in soup.find_all("table"):
        rows = table.find_all("tr")
        if len(rows) < 2:
            continue

        columns = _header_map(rows[0])
        data_rows = rows[1:] if columns else rows

        records = []
        for row in data_rows:
            cells = [_cell_text(cell) for cell in row.find_all(["td", "th"])]
            if len(cells) < 2:
                continue
            if columns:
                record = _record_from_columns(cells, columns)
            else:
                record = _record_from_cells(cells, source)
            if record is not None:
                records.append(record)
            if len(records) >= limit:
                break

        if records:
            return records
    return []


CARD_SELECTORS = (
    ".result-card",
    ".search-result",
    ".license-holder",
    ".professional",
    ".record",
    "[class*='result']",
    "[class*='license']",
)


def _record_from_card(card: Tag, source: "SourceSpec") -> LicenseRecord | None:
    lines = [line.strip() for line in card.get_text("\n").split("\n") if line.strip()]
    if not lines:
        return None
    text = " ".join(lines)

    name = next((line for line in lines if NAME_PATTERN.match(line)), None)
    if name is None:
        return None

    license_match = source.license_search.search(text.upper())
    status_match = STATUS_PATTERN.search(text)
    phone_match = PHONE_PATTERN.search(text)
    email_match = EMAIL_PATTERN.search(text)
    return LicenseRecord(
        name=name,
        license_number=license_match.group(1) if license_match else "",
        license_status=status_match.group(1) if status_match else None,
        phone=phone_match.group(0) if phone_match else None,
        email=email_match.group(0) if email_match else None,
    )


def extract_result_cards(soup: BeautifulSoup, source: "SourceSpec", limit: int) -> list[LicenseRecord]:
    """Result cards under the first selector that yields records."""
    for selector in CARD_SELECTORS:
        cards = soup.select(selector)
        if not cards:
            continue
        records = []
        for card in cards[:limit]:
            record = _record_from_card(card, source)
            if record is not None:
                records.append(record)
        if records:
            logger.info(f"[{source.source_type}] cards matched {selector}: {len(records)}")
            return records
    return []


def extract_text_listing(soup: BeautifulSoup, source: "SourceSpec", limit: int) -> list[LicenseRecord]:
    """Plain-text lines of the form ``Name  LICENSE  Status``."""
    pattern = re.compile(
        r"^\s*(?P<name>[A-Z][A-Za-z'.\-]+(?:,? [A-Z][A-Za-z'.\-]+){1,3})\s+"
        r"(?:Lic(?:ense)?\.?\s*(?:No\.?|#)?:?\s*)?"
        rf"(?P<license>{source.license_core})\s+"
        r"(?P<status>(?i:active|inactive|expired|suspended|revoked|current))\b",
        re.MULTILINE,
    )
    records = []
    for match in pattern.finditer(soup.get_text("\n")):
        records.append(
            LicenseRecord(
                name=match.group("name"),
                license_number=match.group("license"),
                license_status=match.group("status"),
            )
        )
        if len(records) >= limit:
            break
    return records


URL_DIRECT = "direct_url"
URL_SEARCH_PAGE = "search_page"

DIRECT_RESULTS = FormStrategy("direct_results", apply_direct_results)
SEARCH_FORM = FormStrategy("search_form", apply_search_form)

RESULT_TABLE = ExtractionStrategy("result_table", extract_result_table)
RESULT_CARDS = ExtractionStrategy("result_cards", extract_result_cards)
TEXT_LISTING = ExtractionStrategy("text_listing", extract_text_listing)

DEFAULT_FORM_STRATEGIES = (DIRECT_RESULTS, SEARCH_FORM)
DEFAULT_EXTRACTION_STRATEGIES = (RESULT_TABLE, RESULT_CARDS, TEXT_LISTING)
