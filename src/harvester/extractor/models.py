"""
Data models for the extractor: requests, records and results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ExtractionOutcome(str, Enum):
    """How an extraction call ended."""
    SUCCESS = "success"
    EMPTY = "empty"
    FAILURE = "failure"
    UNSUPPORTED = "unsupported"


class CrawlErrorType(Enum):
    """Types of errors that can occur during crawling."""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    GEO_BLOCKED = "geo_blocked"
    BOT_DETECTED = "bot_detected"
    CONNECTION_ERROR = "connection_error"
    SSL_ERROR = "ssl_error"
    DNS_ERROR = "dns_error"
    HTTP_ERROR = "http_error"
    UNKNOWN = "unknown"


@dataclass
class ExtractionRequest:
    """Job parameters handed to the extractor."""
    source_type: str
    jurisdiction: str
    locality_code: str
    profession: str = "real_estate"
    result_limit: int = 50


@dataclass
class LicenseRecord:
    """A license holder as read off a registry results page."""
    name: str
    license_number: str
    license_status: str | None = None
    company: str | None = None
    city: str | None = None
    phone: str | None = None
    email: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_raw(self) -> dict[str, Any]:
        data = {
            "name": self.name,
            "license_number": self.license_number,
            "license_status": self.license_status,
            "company": self.company,
            "city": self.city,
            "phone": self.phone,
            "email": self.email,
        }
        data.update(self.extra)
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class ExtractionResult:
    """Result of one extraction call."""
    outcome: ExtractionOutcome
    records: list[LicenseRecord] = field(default_factory=list)
    strategy_used: str | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def success(cls, records: list[LicenseRecord], strategy_used: str, **diagnostics) -> "ExtractionResult":
        return cls(ExtractionOutcome.SUCCESS, records=records, strategy_used=strategy_used,
                   diagnostics=diagnostics)

    @classmethod
    def empty(cls, **diagnostics) -> "ExtractionResult":
        return cls(ExtractionOutcome.EMPTY, diagnostics=diagnostics)

    @classmethod
    def failure(cls, message: str, error_type: str = CrawlErrorType.UNKNOWN.value,
                **diagnostics) -> "ExtractionResult":
        return cls(ExtractionOutcome.FAILURE, error_message=message, error_type=error_type,
                   diagnostics=diagnostics)

    @classmethod
    def unsupported(cls, message: str) -> "ExtractionResult":
        return cls(ExtractionOutcome.UNSUPPORTED, error_message=message)
