"""
Registry of licensing sources.

Each source type names the jurisdiction it covers, its request budget,
the shape of its license numbers and the ordered strategies used to read
it. Sources registered without strategies are known but not implemented;
the extractor reports them as unsupported.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta

from harvester.extractor.strategies import (
    DEFAULT_EXTRACTION_STRATEGIES,
    DEFAULT_FORM_STRATEGIES,
    URL_DIRECT,
    URL_SEARCH_PAGE,
    ExtractionStrategy,
    FormStrategy,
    SearchForm,
    UrlStrategy,
    fixed_url,
    query_url,
)

DEFAULT_PROFESSION = "real_estate"


@dataclass(frozen=True)
class SourceSpec:
    """Static description of one external registry."""

    source_type: str
    jurisdiction: str
    name: str
    license_core: str
    implemented: bool = True
    requests_per_second: float = 1.0
    refresh_cadence: timedelta = timedelta(days=7)
    profession_map: Mapping[str, str] = field(default_factory=dict)
    profession_select_by: str = "label"
    search_form: SearchForm | None = None
    url_strategies: tuple[UrlStrategy, ...] = ()
    form_strategies: tuple[FormStrategy, ...] = ()
    extraction_strategies: tuple[ExtractionStrategy, ...] = ()

    @property
    def license_pattern(self) -> re.Pattern:
        return re.compile(rf"^(?:{self.license_core})$")

    @property
    def license_search(self) -> re.Pattern:
        return re.compile(rf"\b({self.license_core})\b")

    def profession_code(self, profession: str) -> str:
        """Registry-side code or label for ``profession``."""
        return self.profession_map.get(profession) or self.profession_map.get(DEFAULT_PROFESSION, profession)


FL_DBPR = SourceSpec(
    source_type="FL_DBPR",
    jurisdiction="FL",
    name="Florida Department of Business and Professional Regulation",
    license_core=r"[A-Z]{2,3}\d{5,8}",
    profession_map={
        "real_estate": "2502",
        "real_estate_agent": "2502",
        "real_estate_broker": "2501",
        "insurance": "0602",
        "contractor": "0501",
        "attorney": "1101",
        "dentist": "1401",
    },
    profession_select_by="value",
    search_form=SearchForm(
        location_selectors=('input[name="hCity"]', 'input[name="city"]', 'input[name="zip"]'),
        profession_selectors=('select[name="hProfession"]', 'select[name="profession"]'),
        submit_selectors=('input[name="SubmitBtn"]', 'input[type="submit"]', 'button[type="submit"]'),
    ),
    url_strategies=(
        UrlStrategy(URL_DIRECT, query_url(
            "https://www.myfloridalicense.com/wl11.asp",
            SID="", hProfession="{profession}", hSearchType="2", hCity="{zip}", hCounty="",
            SubmitBtn="Search",
        )),
        UrlStrategy(URL_SEARCH_PAGE, fixed_url("https://www.myfloridalicense.com/wl11.asp")),
    ),
    form_strategies=DEFAULT_FORM_STRATEGIES,
    extraction_strategies=DEFAULT_EXTRACTION_STRATEGIES,
)

TX_TREC = SourceSpec(
    source_type="TX_TREC",
    jurisdiction="TX",
    name="Texas Real Estate Commission",
    license_core=r"\d{6,8}",
    profession_map={
        "real_estate": "Real Estate Sales Agent",
        "real_estate_agent": "Real Estate Sales Agent",
        "real_estate_broker": "Real Estate Broker",
        "insurance": "Insurance Agent",
        "contractor": "General Contractor",
        "attorney": "Attorney",
        "dentist": "Dentist",
    },
    search_form=SearchForm(
        location_selectors=('input[name="city"]', 'input[name="zip"]', 'input[placeholder*="city"]'),
        profession_selectors=('select[name="licenseType"]', 'select[name="license_type"]'),
    ),
    url_strategies=(
        UrlStrategy(URL_DIRECT, query_url(
            "https://www.trec.texas.gov/apps/license-holder-search/",
            searchType="license", licenseType="{profession}", city="{zip}",
        )),
        UrlStrategy(URL_SEARCH_PAGE, fixed_url("https://www.trec.texas.gov/apps/license-holder-search/")),
    ),
    form_strategies=DEFAULT_FORM_STRATEGIES,
    extraction_strategies=DEFAULT_EXTRACTION_STRATEGIES,
)

CA_DRE = SourceSpec(
    source_type="CA_DRE",
    jurisdiction="CA",
    name="California Department of Real Estate",
    license_core=r"\d{8}",
    profession_map={
        "real_estate": "Real Estate Salesperson",
        "real_estate_agent": "Real Estate Salesperson",
        "real_estate_broker": "Real Estate Broker",
    },
    search_form=SearchForm(
        location_selectors=('input[name="city"]', 'input[name="zip"]', 'input[name="location"]'),
        profession_selectors=('select[name="licenseType"]', 'select[name="license_type"]'),
    ),
    url_strategies=(
        UrlStrategy(URL_DIRECT, query_url(
            "https://www2.dre.ca.gov/PublicASP/license_query.asp",
            searchType="license", licenseType="{profession}", city="{zip}",
        )),
        UrlStrategy(URL_SEARCH_PAGE, fixed_url("https://www2.dre.ca.gov/PublicASP/license_query.asp")),
    ),
    form_strategies=DEFAULT_FORM_STRATEGIES,
    extraction_strategies=DEFAULT_EXTRACTION_STRATEGIES,
)

WA_DOL = SourceSpec(
    source_type="WA_DOL",
    jurisdiction="WA",
    name="Washington State Department of Licensing",
    license_core=r"\d{5,8}",
    implemented=False,
)

SOURCES: dict[str, SourceSpec] = {
    spec.source_type: spec for spec in (FL_DBPR, TX_TREC, CA_DRE, WA_DOL)
}
