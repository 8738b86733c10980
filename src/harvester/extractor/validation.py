"""
Structural validation of extracted license records.

Registry pages are full of navigation menus, tab labels and form captions
that look like names to a naive scraper. A strategy's output is accepted
only if its records look like license holders: a person-like name free of
portal boilerplate and a license number in the source's format.
"""

import re
from dataclasses import dataclass, field, replace

from harvester.extractor.models import LicenseRecord

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z'.\-]*,?(?: [A-Za-z][A-Za-z'.\-]*,?){1,5}$")

STATUS_PATTERN = re.compile(
    r"\b(active|inactive|expired|suspended|revoked|current|delinquent|null and void|cancelled|retired)\b",
    re.IGNORECASE,
)

# Words that never appear in a license holder's name but are everywhere
# on registry portals.
BOILERPLATE_WORDS = frozenset({
    "apply", "board", "business", "commission", "content", "department",
    "division", "holder", "home", "license", "licensing", "login", "menu",
    "navigation", "online", "portal", "professional", "regulation", "result",
    "results", "search", "services", "toggle", "verify", "welcome", "click",
    "contact", "faq", "submit", "status", "name",
})

BOILERPLATE_PHRASES = (
    "online services",
    "apply for a license",
    "verify a license",
    "skip to",
    "log in",
    "sign in",
    "javascript",
)

PHONE_PATTERN = re.compile(r"\(?\b\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}\b")
EMAIL_PATTERN = re.compile(r"[\w.+\-]+@[\w\-]+\.[\w.\-]+")

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

# Column widths of the scraped_records table
MAX_LICENSE_LENGTH = 100
MAX_COMPANY_LENGTH = 255
MAX_CITY_LENGTH = 100
MAX_EMAIL_LENGTH = 255


@dataclass
class ValidationReport:
    """Valid records plus the rejects with their reasons."""

    valid: list[LicenseRecord] = field(default_factory=list)
    rejected: list[tuple[LicenseRecord, str]] = field(default_factory=list)
    duplicates: int = 0

    @property
    def accepted(self) -> bool:
        """A strategy's output counts only if real records clearly dominate."""
        return bool(self.valid) and len(self.valid) > len(self.rejected)

    def summary(self) -> dict:
        return {
            "valid": len(self.valid),
            "rejected": len(self.rejected),
            "duplicates": self.duplicates,
            "reasons": sorted({reason for _, reason in self.rejected}),
        }


def normalize_license(value: str | None) -> str:
    if not value:
        return ""
    value = value.strip().upper()
    value = re.sub(r"^(LICENSE|LIC\.?)\s*(NO\.?|NUMBER|#)?\s*:?\s*", "", value)
    return re.sub(r"[\s#]", "", value)


def normalize_name(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r" {2,}", " ", value.strip())


def normalize_status(value: str | None) -> str | None:
    if not value:
        return None
    match = STATUS_PATTERN.search(value)
    return match.group(1).title() if match else None


def clean_text(value: str | None, max_length: int) -> str | None:
    """Collapse whitespace; drop the value if it is empty, garbled or wider than its column."""
    if not value:
        return None
    value = " ".join(value.split())
    if not value or len(value) > max_length or CONTROL_CHARS.search(value):
        return None
    return value


def clean_phone(value: str | None) -> str | None:
    match = PHONE_PATTERN.search(value) if value else None
    return match.group(0) if match else None


def clean_email(value: str | None) -> str | None:
    match = EMAIL_PATTERN.search(value) if value else None
    if match is None or len(match.group(0)) > MAX_EMAIL_LENGTH:
        return None
    return match.group(0).lower()


def name_problem(name: str) -> str | None:
    """Return why ``name`` is not a plausible license holder name, or None."""
    if not name:
        return "missing_name"
    if CONTROL_CHARS.search(name):
        return "control_characters"
    name = normalize_name(name)
    if len(name) < 4 or len(name) > 100:
        return "name_length"
    lowered = name.lower()
    if any(phrase in lowered for phrase in BOILERPLATE_PHRASES):
        return "boilerplate"
    words = set(re.findall(r"[a-z]+", lowered))
    if words & BOILERPLATE_WORDS:
        return "boilerplate"
    if not NAME_PATTERN.match(name):
        return "name_format"
    return None


def validate_records(records: list[LicenseRecord], license_pattern: re.Pattern) -> ValidationReport:
    """
    Check every record and return a report.

    Records are cleaned (name whitespace, license casing, status wording,
    contact fields that do not fit their format or column are dropped) but
    never completed: a record without a license number is rejected, not
    given one.
    """
    report = ValidationReport()
    seen: set[str] = set()

    for record in records:
        problem = name_problem(record.name.strip() if record.name else "")
        license_number = normalize_license(record.license_number)

        if problem is None and not license_number:
            problem = "missing_license"
        elif problem is None and (
            len(license_number) > MAX_LICENSE_LENGTH or not license_pattern.match(license_number)
        ):
            problem = "license_format"

        if problem is not None:
            report.rejected.append((record, problem))
            continue

        if license_number in seen:
            report.duplicates += 1
            continue
        seen.add(license_number)

        report.valid.append(
            replace(
                record,
                name=normalize_name(record.name),
                license_number=license_number,
                license_status=normalize_status(record.license_status),
                company=clean_text(record.company, MAX_COMPANY_LENGTH),
                city=clean_text(record.city, MAX_CITY_LENGTH),
                phone=clean_phone(record.phone),
                email=clean_email(record.email),
            )
        )

    return report
