"""Competitor research and infringement analysis pipeline.

Web research, product verification, registry search and scoring run as
sequential steps against one competitor. Every step persists what it found,
so a failed run leaves usable partial evidence behind.
"""

import re
from typing import List, Optional, Sequence
from urllib.parse import quote

import structlog
from pydantic import ValidationError

from ...models.competitor import (
    AnalysisResult,
    AnalysisSummary,
    BatchItemResult,
    BatchResult,
    CompetitorDocument,
    CompetitorRequest,
    DocumentStatus,
    DocumentType,
    ResearchFindings,
    ResearchResult,
    normalize_name,
)
from ...models.patent import PatentRecord
from ...utils.config import Settings
from ...utils.database import DatabaseClient
from ...utils.document_fetcher import DocumentFetcher
from ...utils.error_tracking import capture_exception
from ...utils.errors import AuthenticationError, JSONExtractionError
from ...utils.llm_client import LLMClient
from ...utils.observability import metrics, trace_operation, track_metrics
from ...utils.ocr import TextExtractor
from ...utils.uspto_client import USPTOClient
from ...utils.xml_parser import extract_description, extract_grant_number
from . import prompts

logger = structlog.get_logger(__name__)

MAX_REGISTRY_PATENTS = 15
MAX_PATENT_EVIDENCE = 10
PRODUCT_EXCERPT = 500
DOCUMENT_EXCERPT = 500
PATENT_EXCERPT = 300
DESCRIPTION_EXCERPT = 2000


def google_patents_url(patent_number: Optional[str], application_number: str, title: Optional[str]) -> str:
    """Viewer link: the grant page when a grant number is known, else a search."""
    if patent_number and patent_number != application_number:
        return f"https://patents.google.com/patent/US{re.sub(r'[^0-9]', '', patent_number)}/en"
    if title:
        return f"https://patents.google.com/?q={quote(title)}"
    return f"https://patents.google.com/?q={application_number or 'unknown'}"


def competitor_notes(findings: ResearchFindings, description: str, category: str,
                     source_patent_id: Optional[str] = None) -> str:
    lines = [
        f"Aliases: {', '.join(findings.aliases) or 'None'}",
        f"Description: {description}",
        f"Technology: {', '.join(findings.technology_stack) or 'N/A'}",
        f"Source: AI web research in {category}",
    ]
    if source_patent_id:
        lines.append(f"Source Patent: {source_patent_id}")
    return "\n".join(lines)


def _evidence_lines(documents: Sequence[CompetitorDocument], limit: int) -> str:
    return "\n".join(f"- {doc.document_name}: {doc.extracted_text[:limit]}" for doc in documents)


class CompetitorResearchPipeline:
    """Researches a competitor and scores it against the portfolio."""

    def __init__(self, settings: Settings, db: DatabaseClient, llm: LLMClient, registry: USPTOClient,
                 fetcher: DocumentFetcher, extractor: Optional[TextExtractor] = None):
        self.settings = settings
        self.db = db
        self.llm = llm
        self.registry = registry
        self.fetcher = fetcher
        self.extractor = extractor

    @track_metrics("pipeline_runs")
    async def research_and_analyze_competitor(
        self,
        company_name: str,
        *,
        user_id: str,
        patent_category: Optional[str] = None,
        source_patent_id: Optional[str] = None,
        existing_competitor_id: Optional[str] = None,
    ) -> ResearchResult:
        """Run the full research and scoring flow for one competitor."""
        if not user_id:
            raise AuthenticationError("A verified user id is required")
        category = patent_category or self.settings.patent_category
        async with trace_operation("competitor_research", {"company": company_name}):
            return await self._run(company_name, user_id, category, source_patent_id, existing_competitor_id)

    async def _run(self, company_name, user_id, category, source_patent_id, existing_competitor_id) -> ResearchResult:
        async with trace_operation("competitor_research.web_research"):
            findings = await self._web_research(company_name, category)

        name = findings.official_name or company_name
        website = findings.website_url
        description = findings.description
        logger.info("Research findings parsed", company=name, products=len(findings.products))

        notes = competitor_notes(findings, description, category, source_patent_id)
        if existing_competitor_id:
            competitor_id = existing_competitor_id
            await self.db.update_competitor(competitor_id, website, notes)
        else:
            competitor_id = await self.db.create_competitor(user_id, name, website, notes)

        async with trace_operation("competitor_research.products"):
            products_added = await self._store_products(competitor_id, findings, website)

        async with trace_operation("competitor_research.registry"):
            patents_found, xml_fetched = await self._store_registry_patents(competitor_id, [name, *findings.aliases])

        async with trace_operation("competitor_research.analysis"):
            analysis = await self._analyze(competitor_id, name, website, description, findings)

        await self.db.upsert_analysis(competitor_id, analysis, patent_id=source_patent_id)
        logger.info(
            "Analysis cached",
            competitor_id=competitor_id,
            risk=analysis.company_risk.value,
            settlement=analysis.settlement_probability,
            max_infringement=analysis.max_infringement,
        )

        return ResearchResult(
            competitor_id=competitor_id,
            competitor_name=name,
            website=website,
            description=description,
            aliases=findings.aliases,
            products_added=products_added,
            patents_found=patents_found,
            xml_fetched=xml_fetched,
            analysis=AnalysisSummary(
                settlement_probability=analysis.settlement_probability,
                company_risk=analysis.company_risk,
                overall_infringement=analysis.mean_infringement,
                max_infringement=analysis.max_infringement,
            ),
        )

    async def _web_research(self, company_name: str, category: str) -> ResearchFindings:
        prompt = prompts.research_prompt(company_name, category)
        try:
            data = await self.llm.complete_json(prompt, max_tokens=4000, use_search_tool=True)
            return ResearchFindings.model_validate(data)
        except (JSONExtractionError, ValidationError) as e:
            logger.warning("Could not parse research answer, using fallback", company=company_name, error=str(e))
            return ResearchFindings.fallback(company_name)

    async def _store_products(self, competitor_id: str, findings: ResearchFindings, website: str) -> int:
        added = 0
        seen = set()
        for product in findings.products:
            key = normalize_name(product.name)
            if key in seen:
                continue
            seen.add(key)
            if await self.db.find_document(competitor_id, document_name=product.name):
                logger.debug("Product already stored", product=product.name)
                continue

            url = product.url
            page_text = ""
            live = False
            if url:
                check = await self.fetcher.verify_url(url)
                live = check.live
                if live and "pdf" not in check.content_type.lower():
                    page_text = await self.fetcher.fetch_page_text(url)
                elif not live:
                    logger.info("Product URL not reachable", url=url)
                    url = ""

            text = f"[{product.category or 'Product'}] {product.description}"
            if page_text:
                text += f"\n\n--- Page Content ---\n{page_text}"

            try:
                await self.db.upsert_competitor_document(CompetitorDocument(
                    competitor_id=competitor_id,
                    source_url=url or website or None,
                    document_name=product.name,
                    document_type=DocumentType.PRODUCT_SERVICE,
                    total_pages=0,
                    extracted_text=text,
                    status=DocumentStatus.VERIFIED if live else DocumentStatus.AI_RESEARCHED,
                ))
            except Exception as e:
                logger.error("Failed to store product", product=product.name, error=str(e))
                continue
            metrics.documents_stored.labels(document_type="product_service",
                                            status="verified" if live else "ai_researched").inc()
            added += 1
        return added

    async def _store_registry_patents(self, competitor_id: str, names: List[str]):
        found = 0
        fetched = 0
        try:
            records = await self.registry.search(names)
            for record in records[:MAX_REGISTRY_PATENTS]:
                if await self.db.find_document(competitor_id, application_number=record.application_number):
                    logger.debug("Patent already stored", application_number=record.application_number)
                    continue
                stored, has_xml = await self._store_patent(competitor_id, record)
                found += stored
                fetched += has_xml
        except Exception as e:
            logger.warning("Patent registry step failed", competitor_id=competitor_id, error=str(e))
            capture_exception(e, {"step": "registry", "competitor_id": competitor_id})

        logger.info("Registry patents stored", competitor_id=competitor_id, patents=found, with_xml=fetched)
        return found, fetched

    async def _store_patent(self, competitor_id: str, record: PatentRecord):
        abstract = record.abstract or ""
        grant_number = record.patent_number
        text = abstract

        xml = await self.registry.fetch_associated_xml(record.application_number)
        if xml is None:
            xml = await self.registry.fetch_xml(record.application_number, record.patent_number,
                                                record.publication_number)
        if xml:
            abstract = xml.abstract or abstract
            text = abstract
            description = extract_description(xml.xml_content)
            if description:
                text = f"{abstract}\n\n--- Description (excerpt) ---\n{description[:DESCRIPTION_EXCERPT]}"
            grant_number = grant_number or extract_grant_number(xml.xml_content) or None

        title = record.title or f"Patent {record.application_number}"
        status = DocumentStatus.XML_AVAILABLE if xml else DocumentStatus.METADATA_ONLY
        await self.db.upsert_competitor_document(CompetitorDocument(
            competitor_id=competitor_id,
            source_url=google_patents_url(grant_number, record.application_number, record.title),
            # Continuations often share a title, so the name carries the application number.
            document_name=f"{title} (US {record.application_number})",
            document_type=DocumentType.PATENT,
            total_pages=1,
            extracted_text=text,
            status=status,
            patent_number=grant_number or record.application_number,
            application_number=record.application_number,
        ))
        metrics.documents_stored.labels(document_type="patent", status=status.value).inc()
        return 1, 1 if xml else 0

    async def _analyze(self, competitor_id: str, name: str, website: str, description: str,
                       findings: ResearchFindings) -> AnalysisResult:
        documents = await self.db.list_competitor_documents(competitor_id)
        products = [d for d in documents
                    if d.document_type in (DocumentType.PRODUCT_SERVICE, DocumentType.PRODUCT_PAGE)]
        uploaded = [d for d in documents if d.document_type in (DocumentType.PDF, DocumentType.UPLOADED)]
        patents = [d for d in documents if d.document_type == DocumentType.PATENT and d.extracted_text]

        prompt = prompts.analysis_prompt(
            owner=self.settings.portfolio_owner,
            competitor=name,
            website=website,
            description=description,
            technology=", ".join(findings.technology_stack),
            products=_evidence_lines(products, PRODUCT_EXCERPT),
            uploaded=_evidence_lines(uploaded, DOCUMENT_EXCERPT),
            patents=_evidence_lines(patents[:MAX_PATENT_EVIDENCE], PATENT_EXCERPT),
        )
        try:
            data = await self.llm.complete_json(prompt, max_tokens=4000)
            return AnalysisResult.model_validate(data)
        except (JSONExtractionError, ValidationError) as e:
            logger.warning("Could not parse analysis answer, using fallback", competitor_id=competitor_id, error=str(e))
            return AnalysisResult.fallback()

    async def research_batch(self, requests: Sequence[CompetitorRequest], *, user_id: str) -> BatchResult:
        """Create, document and research several competitors one after another."""
        if not user_id:
            raise AuthenticationError("A verified user id is required")

        result = BatchResult()
        for request in requests:
            try:
                item = await self._process_request(request, user_id)
            except Exception as e:
                logger.error("Batch item failed", company=request.company_name, error=str(e))
                capture_exception(e, {"step": "research_batch", "company": request.company_name})
                item = BatchItemResult(name=request.company_name, success=False, error=str(e))
            result.competitors.append(item)
            result.total_documents += item.documents_found
            if item.research:
                result.total_documents += item.research.products_added + item.research.patents_found
            result.total_pages += item.pages_extracted

        result.companies_processed = sum(1 for item in result.competitors if item.success)
        logger.info("Batch research complete", processed=result.companies_processed, requested=len(requests))
        return result

    async def _process_request(self, request: CompetitorRequest, user_id: str) -> BatchItemResult:
        notes = [f"Aliases: {', '.join(request.aliases) or 'None'}", "Source: Batch research"]
        if request.patent_numbers:
            notes.append(f"Patent Numbers: {', '.join(request.patent_numbers)}")
        competitor_id = await self.db.create_competitor(user_id, request.company_name, request.website_url,
                                                        "\n".join(notes))

        documents_found = 0
        pages_extracted = 0
        for product in request.product_urls:
            try:
                pages = await self._store_user_document(competitor_id, product.url, product.description)
            except Exception as e:
                logger.error("User document failed", url=product.url, error=str(e))
                capture_exception(e, {"step": "user_document", "url": product.url})
                continue
            if pages is not None:
                documents_found += 1
                pages_extracted += pages

        item = BatchItemResult(
            id=competitor_id,
            name=request.company_name,
            success=True,
            documents_found=documents_found,
            pages_extracted=pages_extracted,
            aliases=request.aliases,
        )
        try:
            item.research = await self.research_and_analyze_competitor(
                request.company_name,
                user_id=user_id,
                existing_competitor_id=competitor_id,
            )
        except Exception as e:
            # The competitor and its documents are kept; the research can be rerun.
            logger.warning("Research step failed", company=request.company_name, error=str(e))
            capture_exception(e, {"step": "research", "company": request.company_name})
            item.error = str(e)
        return item

    async def _store_user_document(self, competitor_id: str, url: str, description: str) -> Optional[int]:
        """OCR a user-supplied URL into pages. Returns the page count, or None if unfetchable."""
        name = description or url.rstrip("/").rsplit("/", 1)[-1] or "Document"
        document = await self.fetcher.fetch_as_document(url)
        if document is None or self.extractor is None:
            await self.db.upsert_competitor_document(CompetitorDocument(
                competitor_id=competitor_id,
                source_url=url,
                document_name=name,
                document_type=DocumentType.PDF,
                total_pages=0,
                extracted_text=f"User-provided URL (could not fetch): {url}",
                status=DocumentStatus.FETCH_FAILED,
            ))
            metrics.documents_stored.labels(document_type="pdf", status="fetch_failed").inc()
            return None

        extraction = await self.extractor.extract(document)
        stored = await self.db.upsert_competitor_document(CompetitorDocument(
            competitor_id=competitor_id,
            source_url=url,
            document_name=name,
            document_type=DocumentType.PDF,
            total_pages=extraction.total_pages,
            extracted_text=extraction.full_text,
            status=DocumentStatus.EXTRACTED,
        ))
        await self.db.insert_document_pages(stored.id, extraction.pages)
        metrics.documents_stored.labels(document_type="pdf", status="extracted").inc()
        return extraction.total_pages
