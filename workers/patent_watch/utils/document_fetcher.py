"""Fetch competitor documents and web pages."""

import re
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

import httpx
import structlog
from lxml import html as lxml_html
from lxml.etree import ParserError

from ..models.competitor import DiscoveredUrl, UrlCheck

logger = structlog.get_logger(__name__)

DOCUMENT_USER_AGENT = "Mozilla/5.0 (compatible; PatentDetectorBot/1.0)"
RESEARCH_USER_AGENT = "Mozilla/5.0 (compatible; PatentResearchBot/1.0)"

VERIFY_TIMEOUT = 8.0
PAGE_TIMEOUT = 15.0
PAGE_TEXT_LIMIT = 5000
MAX_DISCOVERED_URLS = 10

PDF_KEYWORDS = ("spec", "datasheet", "whitepaper", "technical", "manual", "guide")
LINK_TEXT_KEYWORDS = ("product", "specification", "technical", "documentation")
LINK_PATH_SEGMENTS = ("/products/", "/docs/", "/specifications/")

_WHITESPACE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def html_to_text(markup: str, drop_tags=("script", "style")) -> str:
    """Visible text of an HTML document with ``drop_tags`` removed."""
    if not markup or not markup.strip():
        return ""
    try:
        tree = lxml_html.fromstring(markup)
    except (ParserError, ValueError):
        return ""
    for element in tree.xpath("|".join(f"//{tag}" for tag in drop_tags)):
        element.drop_tree()
    return _collapse(tree.text_content())


class DocumentFetcher:
    """HTTP access to competitor web pages and documents."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None,
                 reader_base_url: str = "https://r.jina.ai/"):
        self.http_client = http_client or httpx.AsyncClient(follow_redirects=True, timeout=30.0)
        self.reader_base_url = reader_base_url

    async def close(self):
        await self.http_client.aclose()

    async def _download(self, url: str) -> bytes:
        response = await self.http_client.get(url, headers={"User-Agent": DOCUMENT_USER_AGENT})
        response.raise_for_status()
        return response.content

    async def fetch_as_document(self, url: str) -> Optional[bytes]:
        """Bytes suitable for OCR, or None.

        Web pages go through the reader service, whose text is not yet turned
        into a document, so they yield None. Use ``fetch_as_text`` for pages.
        """
        try:
            path = urlparse(url).path.lower()
            if path.endswith(".pdf"):
                return await self._download(url)

            last_segment = path.rsplit("/", 1)[-1]
            if path.endswith((".html", ".htm")) or "." not in last_segment:
                await self._read_webpage(url)
                return None

            return await self._download(url)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Document fetch failed", url=url, error=str(e))
            return None

    async def _read_webpage(self, url: str) -> Optional[str]:
        try:
            response = await self.http_client.get(
                f"{self.reader_base_url}{url}", headers={"User-Agent": DOCUMENT_USER_AGENT}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Reader service failed", url=url, error=str(e))
            return None
        text = response.text
        logger.info("Webpage read", url=url, characters=len(text))
        return text

    async def fetch_as_text(self, url: str) -> Optional[str]:
        try:
            response = await self.http_client.get(url, headers={"User-Agent": DOCUMENT_USER_AGENT})
        except httpx.HTTPError as e:
            logger.warning("Page fetch failed", url=url, error=str(e))
            return None
        if response.status_code != 200:
            return None
        return html_to_text(response.text)

    async def verify_url(self, url: str) -> UrlCheck:
        """HEAD request that follows redirects. Any failure means not live."""
        try:
            response = await self.http_client.head(
                url,
                headers={"User-Agent": RESEARCH_USER_AGENT},
                timeout=VERIFY_TIMEOUT,
                follow_redirects=True,
            )
        except httpx.HTTPError:
            return UrlCheck(live=False, content_type="")
        return UrlCheck(
            live=response.is_success,
            content_type=response.headers.get("content-type", ""),
        )

    async def fetch_page_text(self, url: str) -> str:
        try:
            response = await self.http_client.get(
                url,
                headers={"User-Agent": RESEARCH_USER_AGENT},
                timeout=PAGE_TIMEOUT,
                follow_redirects=True,
            )
        except httpx.HTTPError:
            return ""
        if not response.is_success:
            return ""
        text = html_to_text(response.text, drop_tags=("script", "style", "nav", "footer", "header"))
        return text[:PAGE_TEXT_LIMIT]

    async def discover_product_urls(self, site_url: str) -> List[DiscoveredUrl]:
        """Scan a company home page for product documentation links."""
        try:
            response = await self.http_client.get(site_url, headers={"User-Agent": DOCUMENT_USER_AGENT})
        except httpx.HTTPError as e:
            logger.warning("Website crawl failed", url=site_url, error=str(e))
            return []
        if response.status_code != 200:
            logger.warning("Website crawl failed", url=site_url, status=response.status_code)
            return []

        try:
            tree = lxml_html.fromstring(response.text)
        except (ParserError, ValueError):
            return []

        base_host = urlparse(site_url).hostname
        pdfs: List[DiscoveredUrl] = []
        pages: List[DiscoveredUrl] = []
        for anchor in tree.iter("a"):
            href = (anchor.get("href") or "").strip()
            if not href:
                continue
            if ".pdf" in href.lower():
                candidate = _classify_pdf(urljoin(site_url, href), href)
                if candidate:
                    pdfs.append(candidate)
                continue
            if href.startswith(("http:", "https:", "//", "mailto:", "javascript:", "#")):
                continue
            full_url = urljoin(site_url, href)
            if urlparse(full_url).hostname != base_host:
                continue
            candidate = _classify_page(full_url, href, _collapse(anchor.text_content()))
            if candidate:
                pages.append(candidate)

        unique: Dict[str, DiscoveredUrl] = {}
        for candidate in pdfs + pages:
            unique.setdefault(candidate.url, candidate)
        discovered = list(unique.values())[:MAX_DISCOVERED_URLS]
        logger.info("Product URLs discovered", url=site_url, count=len(discovered))
        return discovered


def _classify_pdf(full_url: str, href: str) -> Optional[DiscoveredUrl]:
    filename = href.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    filename = re.sub(r"\.pdf$", "", filename, flags=re.IGNORECASE) or "Document"
    description = re.sub(r"[-_]", " ", filename).title()
    lowered = description.lower()
    signals = [f"filename:{word}" for word in PDF_KEYWORDS if word in lowered]
    if not signals:
        return None
    return DiscoveredUrl(url=full_url, description=description,
                         confidence=min(0.9, 0.6 + 0.1 * len(signals)), signals=signals)


def _classify_page(full_url: str, href: str, link_text: str) -> Optional[DiscoveredUrl]:
    text_lower = link_text.lower()
    path_lower = href.lower()
    signals = [f"text:{word}" for word in LINK_TEXT_KEYWORDS if word in text_lower]
    signals += [f"path:{segment}" for segment in LINK_PATH_SEGMENTS if segment in path_lower]
    if not signals:
        return None
    confidence = 0.4 + 0.15 * len(signals)
    return DiscoveredUrl(url=full_url, description=link_text or "Product Page",
                         confidence=min(0.85, confidence), signals=signals)
