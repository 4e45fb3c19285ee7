import pytest
from unittest.mock import AsyncMock, Mock, patch

from patent_watch.models.competitor import (
    AnalysisResult, CompanyRisk, CompetitorDocument, CompetitorRequest, DocumentStatus,
    DocumentType, ProductUrl, ResearchResult, UrlCheck
)
from patent_watch.models.patent import ExtractionResult, PageContent, PatentRecord, PatentXmlResult, XmlProduct
from patent_watch.utils.errors import AuthenticationError, JSONExtractionError, LLMError
from patent_watch.workers.research.pipeline import CompetitorResearchPipeline, google_patents_url

USER_ID = "6f1c2c8e-2a55-4a55-8f0a-3c1e3f1d9b77"
SOURCE_PATENT_ID = "0b9c3a3e-6f0e-4c1c-9a55-0d5b1f6a2f10"

RESEARCH = {
    "officialName": "Acme Ledger Inc.",
    "aliases": ["Acme"],
    "websiteUrl": "https://acme.io",
    "description": "Ledger infrastructure",
    "technologyStack": ["Ethereum", "Merkle trees"],
    "products": [
        {"name": "Vault", "url": "https://acme.io/vault", "description": "Key custody", "category": "Security"},
        {"name": "vault ", "url": "https://acme.io/vault2", "description": "Duplicate"},
        {"name": "Bridge", "url": "https://acme.io/gone", "description": "Cross-chain", "category": "Protocol"},
        {"name": "Keys", "url": "", "description": "Already stored"},
    ],
}

ANALYSIS = {
    "settlementProbability": 65,
    "settlementFactors": [{"factor": "Funding", "impact": "positive", "detail": "Seed stage"}],
    "companyRisk": "High",
    "products": [
        {"name": "Vault", "infringementProbability": 80, "relevantPatents": ["Sharding"], "reasoning": "Overlap"},
        {"name": "Bridge", "infringementProbability": 40, "relevantPatents": [], "reasoning": "Tangential"},
    ],
}


def stored(document):
    return document.model_copy(update={"id": f"doc-{document.document_name}"})


@pytest.fixture
def db():
    client = Mock()
    client.create_competitor = AsyncMock(return_value="comp-1")
    client.update_competitor = AsyncMock()

    async def find_document(competitor_id, document_name=None, application_number=None):
        if document_name == "Keys" or application_number == "300":
            return CompetitorDocument(id="old", competitor_id=competitor_id, document_name="x",
                                      document_type=DocumentType.PATENT, status=DocumentStatus.XML_AVAILABLE)
        return None

    client.find_document = AsyncMock(side_effect=find_document)
    client.upsert_competitor_document = AsyncMock(side_effect=stored)
    client.insert_document_pages = AsyncMock()
    client.list_competitor_documents = AsyncMock(return_value=[
        CompetitorDocument(competitor_id="comp-1", document_name="Vault", document_type=DocumentType.PRODUCT_SERVICE,
                           extracted_text="[Security] Key custody", status=DocumentStatus.VERIFIED),
        CompetitorDocument(competitor_id="comp-1", document_name="Spec", document_type=DocumentType.PDF,
                           extracted_text="Spec sheet text", status=DocumentStatus.EXTRACTED),
        CompetitorDocument(competitor_id="comp-1", document_name="Sharding (US 100)",
                           document_type=DocumentType.PATENT, extracted_text="Patent abstract",
                           status=DocumentStatus.XML_AVAILABLE),
    ])
    client.upsert_analysis = AsyncMock(return_value="analysis-1")
    return client


@pytest.fixture
def llm():
    client = Mock()
    client.complete_json = AsyncMock(side_effect=[RESEARCH, ANALYSIS])
    return client


@pytest.fixture
def registry(grant_xml):
    client = Mock()
    client.search = AsyncMock(return_value=[
        PatentRecord(application_number="100", title="Sharding", abstract="Registry abstract"),
        PatentRecord(application_number="300", title="Stored already"),
    ])
    client.fetch_associated_xml = AsyncMock(return_value=None)
    client.fetch_xml = AsyncMock(return_value=PatentXmlResult(
        xml_content=grant_xml, xml_url="https://bulk/100.xml", product=XmlProduct.GRANT,
        abstract="XML abstract text",
    ))
    return client


@pytest.fixture
def fetcher():
    client = Mock()

    async def verify_url(url):
        if url == "https://acme.io/vault":
            return UrlCheck(live=True, content_type="text/html")
        return UrlCheck(live=False)

    client.verify_url = AsyncMock(side_effect=verify_url)
    client.fetch_page_text = AsyncMock(return_value="Vault keeps keys offline.")
    client.fetch_as_document = AsyncMock(return_value=None)
    return client


@pytest.fixture
def extractor():
    client = Mock()
    client.extract = AsyncMock(return_value=ExtractionResult(
        pages=[PageContent(page_number=1, text="a"), PageContent(page_number=2, text="b")],
        total_pages=2,
        full_text="a\n\nb",
    ))
    return client


@pytest.fixture
def pipeline(settings, db, llm, registry, fetcher, extractor):
    return CompetitorResearchPipeline(settings, db, llm, registry, fetcher, extractor)


def documents_written(db):
    return [call.args[0] for call in db.upsert_competitor_document.await_args_list]


class TestResearchAndAnalyze:
    """Test the single-competitor research flow."""

    @pytest.mark.asyncio
    async def test_full_flow(self, pipeline, db, llm, registry):
        result = await pipeline.research_and_analyze_competitor(
            "Acme", user_id=USER_ID, source_patent_id=SOURCE_PATENT_ID
        )

        assert result.competitor_id == "comp-1"
        assert result.competitor_name == "Acme Ledger Inc."
        assert result.products_added == 2
        assert result.patents_found == 1
        assert result.xml_fetched == 1
        assert result.analysis.max_infringement == 80
        assert result.analysis.overall_infringement == 60
        assert result.analysis.company_risk == CompanyRisk.HIGH

        user_id, name, website, notes = db.create_competitor.await_args.args
        assert (user_id, name, website) == (USER_ID, "Acme Ledger Inc.", "https://acme.io")
        assert "Aliases: Acme" in notes
        assert "Technology: Ethereum, Merkle trees" in notes
        assert "Source: AI web research in Blockchain & Distributed Ledger Technology" in notes
        assert f"Source Patent: {SOURCE_PATENT_ID}" in notes

        registry.search.assert_awaited_once_with(["Acme Ledger Inc.", "Acme"])
        registry.fetch_xml.assert_awaited_once_with("100", None, None)

        analysis, = [c for c in db.upsert_analysis.await_args_list]
        assert analysis.args[0] == "comp-1"
        assert analysis.kwargs["patent_id"] == SOURCE_PATENT_ID
        assert analysis.args[1].max_infringement == 80

    @pytest.mark.asyncio
    async def test_products_are_verified_and_deduplicated(self, pipeline, db, fetcher):
        await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        products = [d for d in documents_written(db) if d.document_type == DocumentType.PRODUCT_SERVICE]
        assert [d.document_name for d in products] == ["Vault", "Bridge"]

        vault, bridge = products
        assert vault.status == DocumentStatus.VERIFIED
        assert vault.source_url == "https://acme.io/vault"
        assert vault.extracted_text == "[Security] Key custody\n\n--- Page Content ---\nVault keeps keys offline."
        assert bridge.status == DocumentStatus.AI_RESEARCHED
        assert bridge.source_url == "https://acme.io"
        assert bridge.extracted_text == "[Protocol] Cross-chain"
        fetcher.fetch_page_text.assert_awaited_once_with("https://acme.io/vault")

    @pytest.mark.asyncio
    async def test_registry_patent_is_enriched_from_xml(self, pipeline, db):
        await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        patent, = [d for d in documents_written(db) if d.document_type == DocumentType.PATENT]
        assert patent.document_name == "Sharding (US 100)"
        assert patent.status == DocumentStatus.XML_AVAILABLE
        assert patent.application_number == "100"
        assert patent.patent_number == "10411897"
        assert patent.source_url == "https://patents.google.com/patent/US10411897/en"
        assert patent.extracted_text.startswith("XML abstract text\n\n--- Description (excerpt) ---\n")

    @pytest.mark.asyncio
    async def test_associated_documents_xml_is_preferred(self, pipeline, db, registry, grant_xml):
        registry.fetch_associated_xml.return_value = PatentXmlResult(
            xml_content=grant_xml, xml_url="https://bulk/assoc-100.xml", product=XmlProduct.GRANT,
            abstract="Associated abstract",
        )
        registry.fetch_xml.return_value = None

        result = await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        patent, = [d for d in documents_written(db) if d.document_type == DocumentType.PATENT]
        assert patent.status == DocumentStatus.XML_AVAILABLE
        assert patent.extracted_text.startswith("Associated abstract")
        assert result.xml_fetched == 1
        registry.fetch_associated_xml.assert_awaited_once_with("100")
        registry.fetch_xml.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_patent_without_xml_is_metadata_only(self, pipeline, db, registry):
        registry.fetch_xml.return_value = None

        result = await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        patent, = [d for d in documents_written(db) if d.document_type == DocumentType.PATENT]
        assert patent.status == DocumentStatus.METADATA_ONLY
        assert patent.extracted_text == "Registry abstract"
        assert patent.patent_number == "100"
        assert patent.source_url == "https://patents.google.com/?q=Sharding"
        assert result.xml_fetched == 0

    @pytest.mark.asyncio
    async def test_analysis_prompt_carries_evidence(self, pipeline, llm):
        await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        research_call, analysis_call = llm.complete_json.await_args_list
        assert research_call.kwargs == {"max_tokens": 4000, "use_search_tool": True}
        assert analysis_call.kwargs == {"max_tokens": 4000}
        prompt = analysis_call.args[0]
        assert "- Vault: [Security] Key custody" in prompt
        assert "USER-UPLOADED COMPETITOR DOCUMENTATION:\n- Spec: Spec sheet text" in prompt
        assert "COMPETITOR PATENTS (from USPTO):\n- Sharding (US 100): Patent abstract" in prompt

    @pytest.mark.asyncio
    async def test_unparseable_research_uses_fallback(self, pipeline, db, llm, fetcher):
        llm.complete_json.side_effect = [JSONExtractionError("no json"), ANALYSIS]

        result = await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        assert result.competitor_name == "Acme"
        assert result.products_added == 0
        assert "Aliases: None" in db.create_competitor.await_args.args[3]
        fetcher.verify_url.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unparseable_analysis_uses_neutral_fallback(self, pipeline, db, llm):
        llm.complete_json.side_effect = [RESEARCH, JSONExtractionError("no json")]

        result = await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        assert result.analysis.settlement_probability == 50
        assert result.analysis.company_risk == CompanyRisk.MEDIUM
        assert result.analysis.max_infringement == 0
        stored_analysis = db.upsert_analysis.await_args.args[1]
        assert stored_analysis == AnalysisResult.fallback()

    @pytest.mark.asyncio
    async def test_llm_errors_propagate(self, pipeline, db, llm):
        llm.complete_json.side_effect = LLMError("overloaded", status=529)

        with pytest.raises(LLMError):
            await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        db.create_competitor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registry_failure_degrades(self, pipeline, registry, db):
        registry.search.side_effect = RuntimeError("registry down")

        result = await pipeline.research_and_analyze_competitor("Acme", user_id=USER_ID)

        assert result.patents_found == 0
        db.upsert_analysis.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_competitor_is_updated(self, pipeline, db):
        result = await pipeline.research_and_analyze_competitor(
            "Acme", user_id=USER_ID, existing_competitor_id="comp-9"
        )

        assert result.competitor_id == "comp-9"
        db.create_competitor.assert_not_awaited()
        assert db.update_competitor.await_args.args[:2] == ("comp-9", "https://acme.io")

    @pytest.mark.asyncio
    async def test_user_id_is_required(self, pipeline, llm):
        with pytest.raises(AuthenticationError):
            await pipeline.research_and_analyze_competitor("Acme", user_id="")

        llm.complete_json.assert_not_awaited()


class TestResearchBatch:
    """Test batch research over several competitors."""

    @pytest.fixture
    def research_result(self):
        return ResearchResult(competitor_id="comp-1", competitor_name="Acme")

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, pipeline, db, fetcher, extractor, research_result):
        fetcher.fetch_as_document.side_effect = [b"%PDF-1.7", None]
        db.create_competitor.side_effect = ["comp-1", RuntimeError("insert failed")]
        pipeline.research_and_analyze_competitor = AsyncMock(return_value=research_result)
        requests = [
            CompetitorRequest(company_name="Acme", aliases=["Acme Co"], product_urls=[
                ProductUrl(url="https://acme.io/files/spec.pdf", description="Vault spec"),
                ProductUrl(url="https://acme.io/products/vault/"),
            ]),
            CompetitorRequest(company_name="Broken"),
        ]

        with patch("patent_watch.workers.research.pipeline.capture_exception") as capture:
            result = await pipeline.research_batch(requests, user_id=USER_ID)

        assert result.companies_processed == 1
        assert result.total_documents == 1
        assert result.total_pages == 2

        acme, broken = result.competitors
        assert acme.success and acme.id == "comp-1" and acme.research == research_result
        assert acme.aliases == ["Acme Co"]
        assert not broken.success
        assert broken.error == "insert failed"
        capture.assert_called_once()

        notes = db.create_competitor.await_args_list[0].args[3]
        assert notes == "Aliases: Acme Co\nSource: Batch research"

        extracted, failed = documents_written(db)
        assert extracted.status == DocumentStatus.EXTRACTED
        assert extracted.document_name == "Vault spec"
        assert extracted.total_pages == 2
        assert extracted.extracted_text == "a\n\nb"
        assert failed.status == DocumentStatus.FETCH_FAILED
        assert failed.document_name == "vault"
        assert failed.extracted_text == "User-provided URL (could not fetch): https://acme.io/products/vault/"
        db.insert_document_pages.assert_awaited_once_with("doc-Vault spec", extractor.extract.return_value.pages)

        pipeline.research_and_analyze_competitor.assert_awaited_once_with(
            "Acme", user_id=USER_ID, existing_competitor_id="comp-1"
        )

    @pytest.mark.asyncio
    async def test_totals_include_researched_documents(self, pipeline, fetcher):
        fetcher.fetch_as_document.return_value = None
        pipeline.research_and_analyze_competitor = AsyncMock(return_value=ResearchResult(
            competitor_id="comp-1", competitor_name="Acme", products_added=2, patents_found=3,
        ))
        request = CompetitorRequest(company_name="Acme", product_urls=[ProductUrl(url="https://acme.io/a.pdf")])

        result = await pipeline.research_batch([request], user_id=USER_ID)

        assert result.competitors[0].documents_found == 0
        assert result.total_documents == 5

    @pytest.mark.asyncio
    async def test_research_failure_keeps_competitor(self, pipeline, db):
        pipeline.research_and_analyze_competitor = AsyncMock(side_effect=LLMError("overloaded"))

        with patch("patent_watch.workers.research.pipeline.capture_exception"):
            result = await pipeline.research_batch([CompetitorRequest(company_name="Acme")], user_id=USER_ID)

        item, = result.competitors
        assert item.success
        assert item.research is None
        assert "overloaded" in item.error
        assert result.companies_processed == 1

    @pytest.mark.asyncio
    async def test_batch_requires_user(self, pipeline):
        with pytest.raises(AuthenticationError):
            await pipeline.research_batch([CompetitorRequest(company_name="Acme")], user_id="")


class TestGooglePatentsUrl:
    """Test viewer links for stored patents."""

    def test_grant_number(self):
        assert google_patents_url("10,411,897", "15456067", "Title") == "https://patents.google.com/patent/US10411897/en"

    def test_title_search(self):
        assert google_patents_url(None, "15456067", "Load balancing") == "https://patents.google.com/?q=Load%20balancing"

    def test_application_number_search(self):
        assert google_patents_url("15456067", "15456067", None) == "https://patents.google.com/?q=15456067"
