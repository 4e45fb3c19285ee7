"""Client for the USPTO Open Data Portal.

Two API surfaces are used: the patent applications search and the bulk-data
product files that hold the full grant or application XML.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
import structlog

from ..models.patent import PatentRecord, PatentXmlResult, XmlProduct
from .config import Settings
from .observability import metrics, trace_span
from .xml_parser import extract_abstract

logger = structlog.get_logger(__name__)

GRANT_PRODUCT = "PTGRXML-SPLT"
APPLICATION_PRODUCT = "APPXML-SPLT"
SEARCH_ROWS = 25
FILES_PER_SEARCH = 3
MIN_XML_LENGTH = 100

# Logical field -> dotted paths, tried in order. The search API has changed
# shape several times, so every known location is listed.
FIELD_PATHS: Dict[str, Sequence[str]] = {
    "application_number": (
        "applicationNumberText",
        "applicationMetaData.applicationNumberText",
        "patentApplicationNumber",
        "applicationNumber",
        "applicationMetaData.applicationNumber",
        "applicationMetaData.patentApplicationNumber",
        "appNum",
        "applicationDataBag.applicationNumberText",
        "applicationDataBag.applicationNumber",
        "patentFileWrapperIdentifier",
        "applicationIdentifier",
    ),
    "patent_number": (
        "patentNumber",
        "applicationMetaData.patentNumber",
        "patentGrantIdentifier",
        "applicationDataBag.patentNumber",
        "grantDocumentIdentifier",
    ),
    "publication_number": (
        "publicationNumber",
        "applicationMetaData.earliestPublicationNumber",
        "applicationMetaData.publicationNumber",
        "pgpubDocumentMetaData.documentIdentifier",
    ),
    "title": (
        "inventionTitle",
        "applicationMetaData.inventionTitle",
        "patentTitle",
        "applicationMetaData.patentTitle",
        "applicationDataBag.inventionTitle",
        "titleOfInvention",
    ),
    "filing_date": (
        "filingDate",
        "applicationMetaData.filingDate",
        "applicationDataBag.filingDate",
        "applicationFilingDate",
    ),
    "grant_date": (
        "grantDate",
        "applicationMetaData.grantDate",
        "applicationDataBag.grantDate",
        "patentGrantDate",
    ),
    "abstract": (
        "abstract",
        "applicationMetaData.inventionAbstract",
        "inventionAbstract",
        "applicationDataBag.abstract",
    ),
}

RESULT_LIST_KEYS = ("results", "patentFileWrapperDataBag", "patents", "data")
FILE_LIST_KEYS = ("files", "results", "productFiles")
METADATA_KEYS = ("applicationMetaData", "applicationDataBag")
APPLICANT_NAME_KEYS = ("applicantNameText", "name", "organizationName")
INVENTOR_NAME_KEYS = ("inventorNameText", "name")


def deep_get(doc: Any, paths: Iterable[str]) -> str:
    """Return the first non-empty string or number found along ``paths``."""
    for path in paths:
        value = doc
        for part in path.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(part)
        if isinstance(value, bool):
            continue
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)):
            return str(value)
    return ""


def _first_list(doc: Any, keys: Sequence[str]) -> List[Any]:
    if not isinstance(doc, dict):
        return []
    for key in keys:
        value = doc.get(key)
        if isinstance(value, list) and value:
            return value
    return []


def _names(entries: Any, keys: Sequence[str]) -> List[str]:
    names = []
    for entry in entries or []:
        if isinstance(entry, dict):
            name = deep_get(entry, keys)
            if name:
                names.append(name)
    return names


def record_from_result(result: Dict[str, Any]) -> Optional[PatentRecord]:
    """Decode one search row. Rows without an application number are dropped."""
    application_number = deep_get(result, FIELD_PATHS["application_number"])
    if not re.sub(r"\D", "", application_number):
        return None

    metadata = result
    for key in METADATA_KEYS:
        if isinstance(result.get(key), dict):
            metadata = result[key]
            break

    fields = {name: deep_get(result, paths) or None for name, paths in FIELD_PATHS.items()
              if name != "application_number"}
    return PatentRecord(
        application_number=application_number,
        applicants=_names(metadata.get("applicantBag"), APPLICANT_NAME_KEYS),
        inventors=_names(metadata.get("inventorBag"), INVENTOR_NAME_KEYS),
        **fields,
    )


def name_words(name: str) -> List[str]:
    return [word for word in re.findall(r"[a-z0-9]+", name.lower()) if len(word) >= 3]


def mentions_name(record: PatentRecord, name: str) -> bool:
    """True when any significant word of ``name`` appears in the record's parties."""
    words = name_words(name)
    if not words:
        return False
    parties = " ".join(record.applicants + record.inventors).lower()
    return any(word in parties for word in words)


class USPTOClient:
    """Search and XML retrieval against the USPTO Open Data Portal."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.require("uspto_api_key")
        self.base_url = settings.uspto_api_base.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self.http_client.aclose()

    def _headers(self, accept: str = "application/json") -> Dict[str, str]:
        return {"X-API-KEY": self.api_key, "accept": accept}

    async def _get_json(self, url: str, endpoint: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.http_client.get(url, headers=self._headers())
            metrics.registry_requests_total.labels(endpoint=endpoint, status=str(response.status_code)).inc()
            if response.status_code != 200:
                logger.warning("USPTO request failed", url=url, status=response.status_code)
                return None
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            metrics.registry_requests_total.labels(endpoint=endpoint, status="error").inc()
            logger.warning("USPTO request error", url=url, error=str(e))
            return None

    async def _search_rows(self, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        response = await self.http_client.post(
            f"{self.base_url}/patent/applications/search",
            json=body,
            headers={**self._headers(), "Content-Type": "application/json"},
        )
        metrics.registry_requests_total.labels(endpoint="search", status=str(response.status_code)).inc()
        if response.status_code == 404:
            # The search API answers 404 when nothing matches.
            return []
        response.raise_for_status()
        return _first_list(response.json(), RESULT_LIST_KEYS)

    async def _search_name(self, name: str) -> List[PatentRecord]:
        base = {
            "pagination": {"offset": 0, "limit": SEARCH_ROWS},
            "sort": [{"field": "applicationMetaData.filingDate", "order": "desc"}],
        }
        rows = await self._search_rows({
            **base,
            "filters": [{"name": "applicationMetaData.firstApplicantName", "value": [name]}],
        })
        records = [r for r in (record_from_result(row) for row in rows if isinstance(row, dict)) if r]
        if records:
            return records

        rows = await self._search_rows({**base, "q": f'"{name}"'})
        records = [r for r in (record_from_result(row) for row in rows if isinstance(row, dict)) if r]
        return [record for record in records if mentions_name(record, name)]

    @trace_span("uspto.search")
    async def search(self, names: Sequence[str]) -> List[PatentRecord]:
        """Search by company names. Results are unique by application number."""
        found: List[PatentRecord] = []
        seen = set()
        for name in names:
            if not name or not name.strip():
                continue
            try:
                records = await self._search_name(name.strip())
            except (httpx.HTTPError, ValueError) as e:
                logger.error("USPTO search failed", company=name, error=str(e))
                continue

            added = 0
            for record in records:
                if record.application_number not in seen:
                    seen.add(record.application_number)
                    found.append(record)
                    added += 1
            logger.info("USPTO search complete", company=name, rows=len(records), added=added)

        return found

    async def get_details(self, application_number: str) -> Optional[Dict[str, Any]]:
        app = re.sub(r"\D", "", application_number)
        return await self._get_json(f"{self.base_url}/patent/applications/{app}", "details")

    async def get_associated_documents(self, application_number: str) -> Optional[Dict[str, Any]]:
        """First file-wrapper entry listing the grant and publication XML locations."""
        app = re.sub(r"\D", "", application_number)
        data = await self._get_json(
            f"{self.base_url}/patent/applications/{app}/associated-documents", "associated-documents"
        )
        bag = _first_list(data, ("patentFileWrapperDataBag",))
        return bag[0] if bag and isinstance(bag[0], dict) else None

    async def fetch_associated_xml(self, application_number: str) -> Optional[PatentXmlResult]:
        """XML named by the file wrapper, grant first, then pre-grant publication."""
        entry = await self.get_associated_documents(application_number)
        if not entry:
            return None
        for key, product in (("grantDocumentMetaData", GRANT_PRODUCT),
                             ("pgpubDocumentMetaData", APPLICATION_PRODUCT)):
            meta = entry.get(key)
            if isinstance(meta, dict) and meta.get("fileLocationURI"):
                return await self._try_fetch_xml(meta["fileLocationURI"], product)
        return None

    async def resolve_identifiers(self, record: PatentRecord) -> PatentRecord:
        """Fill missing patent/publication numbers and dates from the detail record."""
        if record.patent_number and record.publication_number:
            return record
        details = await self.get_details(record.application_number)
        if not details:
            return record
        entry = _first_list(details, RESULT_LIST_KEYS)
        source = entry[0] if entry and isinstance(entry[0], dict) else details

        updates = {}
        for name in ("patent_number", "publication_number", "grant_date", "filing_date"):
            if not getattr(record, name):
                value = deep_get(source, FIELD_PATHS[name])
                if value:
                    updates[name] = value
        return record.model_copy(update=updates) if updates else record

    @trace_span("uspto.fetch_xml")
    async def fetch_xml(self, application_number: str, patent_number: Optional[str] = None,
                        publication_number: Optional[str] = None) -> Optional[PatentXmlResult]:
        """Best-effort retrieval of the full XML. Grant is preferred over application."""
        app = re.sub(r"\D", "", application_number or "")
        if not app:
            return None
        patent = re.sub(r"\D", "", patent_number or "")

        searches = [
            (GRANT_PRODUCT, f"applicationNumberText={app}"),
            (APPLICATION_PRODUCT, f"applicationNumberText={app}"),
        ]
        if patent:
            searches.append((GRANT_PRODUCT, f"patentNumber={patent}"))

        for product, query in searches:
            result = await self._search_files(product, query)
            if result:
                return result

        result = await self._direct_lookup(app, patent, publication_number)
        if result is None:
            logger.info("No XML found", application_number=app)
        return result

    async def _search_files(self, product: str, query: str) -> Optional[PatentXmlResult]:
        data = await self._get_json(f"{self.base_url}/datasets/products/files/{product}?{query}", "files")
        for entry in _first_list(data, FILE_LIST_KEYS)[:FILES_PER_SEARCH]:
            if not isinstance(entry, dict):
                continue
            url = entry.get("url") or entry.get("fileUrl")
            if not url:
                path = entry.get("path") or entry.get("filePath") or entry.get("fileName")
                if not path:
                    continue
                url = f"{self.base_url}/datasets/products/files/{product}/{path}"
            result = await self._try_fetch_xml(url, product)
            if result:
                return result
        return None

    async def _direct_lookup(self, app: str, patent: str,
                             publication_number: Optional[str]) -> Optional[PatentXmlResult]:
        details = await self.get_details(app)
        if not details:
            return None
        entry = _first_list(details, RESULT_LIST_KEYS)
        source = entry[0] if entry and isinstance(entry[0], dict) else details

        patent = patent or re.sub(r"\D", "", deep_get(source, FIELD_PATHS["patent_number"]))
        publication = re.sub(r"\D", "", publication_number or deep_get(source, FIELD_PATHS["publication_number"]))
        grant_date = deep_get(source, FIELD_PATHS["grant_date"])
        filing_date = deep_get(source, FIELD_PATHS["filing_date"])

        if patent and grant_date:
            url = self._bulk_url(GRANT_PRODUCT, "ipg", grant_date, f"{app}_{patent}")
            result = await self._try_fetch_xml(url, GRANT_PRODUCT)
            if result:
                return result

        if publication and filing_date:
            url = self._bulk_url(APPLICATION_PRODUCT, "ipa", filing_date, f"{app}_{publication}")
            return await self._try_fetch_xml(url, APPLICATION_PRODUCT)

        return None

    def _bulk_url(self, product: str, prefix: str, date: str, filename: str) -> str:
        digits = date.replace("-", "")
        return f"{self.base_url}/datasets/products/files/{product}/{digits[:4]}/{prefix}{digits[2:8]}/{filename}.xml"

    async def _try_fetch_xml(self, url: str, product: str) -> Optional[PatentXmlResult]:
        try:
            response = await self.http_client.get(url, headers=self._headers("application/xml"))
        except httpx.HTTPError as e:
            logger.debug("XML fetch error", url=url, error=str(e))
            return None
        metrics.registry_requests_total.labels(endpoint="xml", status=str(response.status_code)).inc()
        if response.status_code != 200:
            return None
        xml = response.text
        if not xml or len(xml) <= MIN_XML_LENGTH or "<" not in xml:
            return None

        logger.info("Patent XML fetched", url=url, product=product, length=len(xml))
        return PatentXmlResult(
            xml_content=xml,
            xml_url=url,
            product=XmlProduct.GRANT if product == GRANT_PRODUCT else XmlProduct.APPLICATION,
            abstract=extract_abstract(xml),
        )
