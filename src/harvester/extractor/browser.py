"""
Browser access to licensing registry pages.

One headless Chromium per extraction, optionally behind a US proxy, with a
randomised fingerprint when stealth mode is on. Navigation failures are
mapped onto CrawlErrorType so the consumer can tell a slow registry from a
blocked one.

Retries are not done here: a failed navigation is reported to the
extractor engine, and the consumer decides on redelivery.
"""

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeout

from harvester.core.config import Settings, get_settings
from harvester.core.exceptions import NavigationException
from harvester.extractor.models import CrawlErrorType

logger = logging.getLogger(__name__)


STEALTH_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
]

STEALTH_VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
]

STEALTH_INIT_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
    Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
    window.chrome = { runtime: {} };
"""

BOT_INDICATORS = (
    "captcha",
    "robot verification",
    "please verify you are human",
    "access denied",
    "unusual traffic",
    "automated access",
    "cloudflare",
)


class PageCrawlerService:
    """Playwright browser sessions with stealth and proxy support."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.timeout = self.settings.crawler_timeout
        self.navigation_timeout = self.settings.crawler_navigation_timeout
        self.stealth_mode = self.settings.crawler_stealth_mode

    def _log_stage(self, stage: str, started: float, **fields):
        """Log how long a browser stage took, with whatever context the caller has."""
        context = " ".join(f"{k}={v}" for k, v in fields.items())
        logger.info(f"browser {stage} in {time.time() - started:.2f}s {context}".rstrip())

    def _get_user_agent(self) -> str:
        if self.settings.crawler_user_agent:
            return self.settings.crawler_user_agent
        return random.choice(STEALTH_USER_AGENTS)

    def _get_viewport(self) -> dict:
        if self.stealth_mode:
            return random.choice(STEALTH_VIEWPORTS)
        return {
            "width": self.settings.crawler_viewport_width,
            "height": self.settings.crawler_viewport_height
        }

    def _get_proxy_config(self) -> dict | None:
        """Playwright proxy settings, or None to connect directly."""
        if not self.settings.crawler_proxy_url:
            return None

        proxy_config = {"server": self.settings.crawler_proxy_url}
        if self.settings.crawler_proxy_username:
            proxy_config["username"] = self.settings.crawler_proxy_username
        if self.settings.crawler_proxy_password:
            proxy_config["password"] = self.settings.crawler_proxy_password
        return proxy_config

    def classify_error(self, error: Exception | None, response=None) -> tuple[CrawlErrorType, str]:
        """Classify a navigation failure and describe it."""
        if response is not None:
            status = response.status
            if status in (403, 451):
                return CrawlErrorType.GEO_BLOCKED, (
                    f"HTTP {status} from registry; requests from this region appear to be refused"
                )
            if status == 429:
                return CrawlErrorType.BOT_DETECTED, "HTTP 429 from registry; too many requests"
            if status == 503:
                return CrawlErrorType.BOT_DETECTED, "HTTP 503 from registry; likely an anti-bot gate"
            if 400 <= status < 600:
                return CrawlErrorType.HTTP_ERROR, f"HTTP {status} from registry."

        error_str = str(error).lower() if error is not None else ""

        if isinstance(error, PlaywrightTimeout) or "timeout" in error_str:
            return CrawlErrorType.TIMEOUT, f"Registry page did not load within {self.navigation_timeout}ms"
        if "net::err_name_not_resolved" in error_str or "dns" in error_str:
            return CrawlErrorType.DNS_ERROR, "Registry host did not resolve"
        if any(code in error_str for code in (
            "net::err_connection_refused",
            "net::err_connection_reset",
            "net::err_connection_closed",
        )):
            return CrawlErrorType.CONNECTION_ERROR, "Registry refused or reset the connection"
        if "ssl" in error_str or "certificate" in error_str:
            return CrawlErrorType.SSL_ERROR, "TLS handshake with the registry failed"
        if any(pattern in error_str for pattern in ("captcha", "robot", "blocked", "denied")):
            return CrawlErrorType.BOT_DETECTED, "Registry rejected the browser as automated"

        return CrawlErrorType.UNKNOWN, f"Unexpected error: {error}"

    def is_bot_detection_page(self, html_content: str) -> bool:
        """True for short pages that read like a block or CAPTCHA interstitial."""
        if len(html_content) >= 2000:
            return False
        html_lower = html_content.lower()
        return any(indicator in html_lower for indicator in BOT_INDICATORS)

    async def _random_delay(self):
        """Jittered pause before navigating in stealth mode."""
        if self.stealth_mode:
            delay = random.uniform(
                self.settings.crawler_random_delay_min,
                self.settings.crawler_random_delay_max
            )
            await asyncio.sleep(delay)

    @asynccontextmanager
    async def open_page(self) -> AsyncIterator[Page]:
        """Launch a browser and yield one configured page; everything is closed on exit."""
        proxy_config = self._get_proxy_config()
        launch_options = {"headless": True}
        if proxy_config:
            launch_options["proxy"] = proxy_config

        context_options = {
            "user_agent": self._get_user_agent(),
            "viewport": self._get_viewport(),
            "java_script_enabled": True,
            "locale": "en-US",
            "timezone_id": "America/New_York",
        }
        if self.stealth_mode:
            context_options["extra_http_headers"] = {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
                "Upgrade-Insecure-Requests": "1",
            }

        async with async_playwright() as p:
            browser_start = time.time()
            browser = await p.chromium.launch(**launch_options)
            try:
                context = await browser.new_context(**context_options)
                if self.stealth_mode:
                    await context.add_init_script(STEALTH_INIT_SCRIPT)
                page = await context.new_page()
                page.set_default_timeout(self.timeout)
                page.set_default_navigation_timeout(self.navigation_timeout)
                self._log_stage("launch", browser_start, stealth=self.stealth_mode, proxy=bool(proxy_config))
                try:
                    yield page
                finally:
                    await context.close()
            finally:
                await browser.close()

    async def navigate(self, page: Page, url: str) -> Response:
        """
        Load ``url`` in ``page``.

        Raises:
            NavigationException: on timeouts, network errors, HTTP errors
                and bot-detection pages
        """
        await self._random_delay()
        nav_start = time.time()
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout)
        except (PlaywrightTimeout, PlaywrightError) as e:
            error_type, error_msg = self.classify_error(e)
            logger.error(f"{error_type.value} loading {url}: {e}")
            raise NavigationException(url, error_type, error_msg) from e

        if response is None:
            raise NavigationException(url, CrawlErrorType.CONNECTION_ERROR, "No response received from server")
        if not response.ok:
            error_type, error_msg = self.classify_error(None, response)
            logger.error(f"HTTP {response.status} for {url}: {error_msg}")
            raise NavigationException(url, error_type, error_msg)

        try:
            await page.wait_for_load_state("networkidle", timeout=15000)
        except PlaywrightTimeout:
            logger.warning(f"{url} never went network-idle; reading partial DOM")

        html_content = await page.content()
        if self.is_bot_detection_page(html_content):
            logger.warning(f"Challenge page at {url}")
            raise NavigationException(url, CrawlErrorType.BOT_DETECTED,
                                      "Registry served a challenge page instead of results")

        self._log_stage("navigate", nav_start, url=url, status=response.status, html_chars=len(html_content))
        return response
