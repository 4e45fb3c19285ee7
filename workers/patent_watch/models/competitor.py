"""Competitor, document and analysis models."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def clamp_probability(value: Any) -> int:
    """Coerce a model-supplied score to an integer in [0, 100]."""
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return int(round(min(100.0, max(0.0, number))))


class DocumentType(str, Enum):
    PRODUCT_SERVICE = "product_service"
    PRODUCT_PAGE = "product_page"
    PDF = "pdf"
    UPLOADED = "uploaded"
    PATENT = "patent"


class DocumentStatus(str, Enum):
    PENDING_EXTRACTION = "pending_extraction"
    FETCH_FAILED = "fetch_failed"
    AI_RESEARCHED = "ai_researched"
    METADATA_ONLY = "metadata_only"
    EXTRACTED = "extracted"
    VERIFIED = "verified"
    XML_AVAILABLE = "xml_available"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def advance(cls, current: Optional["DocumentStatus"], proposed: "DocumentStatus") -> "DocumentStatus":
        """Return the status a document should hold; never moves backwards."""
        if current is None:
            return proposed
        current = cls(current)
        proposed = cls(proposed)
        return proposed if proposed.rank >= current.rank else current


_STATUS_RANK = {
    DocumentStatus.PENDING_EXTRACTION: 0,
    DocumentStatus.FETCH_FAILED: 1,
    DocumentStatus.AI_RESEARCHED: 2,
    DocumentStatus.METADATA_ONLY: 2,
    DocumentStatus.EXTRACTED: 3,
    DocumentStatus.VERIFIED: 3,
    DocumentStatus.XML_AVAILABLE: 3,
}


class CompetitorDocument(BaseModel):
    """Evidence stored against a competitor."""
    id: Optional[str] = None
    competitor_id: str
    source_url: Optional[str] = None
    document_name: str
    document_type: DocumentType
    total_pages: int = 0
    extracted_text: str = ""
    status: DocumentStatus
    patent_number: Optional[str] = None
    application_number: Optional[str] = None


def normalize_name(name: str) -> str:
    """Same key as the lower(btrim(document_name)) unique index."""
    return (name or "").strip().lower()


class Impact(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class CompanyRisk(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class SettlementFactor(BaseModel):
    factor: str = ""
    impact: Impact = Impact.NEUTRAL
    detail: str = ""

    @field_validator("impact", mode="before")
    @classmethod
    def _known_impact(cls, value):
        value = str(value or "").strip().lower()
        return value if value in {i.value for i in Impact} else Impact.NEUTRAL


class ProductAssessment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    infringement_probability: int = Field(default=0, alias="infringementProbability")
    relevant_patents: List[str] = Field(default_factory=list, alias="relevantPatents")
    reasoning: str = ""

    @field_validator("infringement_probability", mode="before")
    @classmethod
    def _clamp_probability(cls, value):
        return clamp_probability(value)

    @field_validator("relevant_patents", mode="before")
    @classmethod
    def _patent_strings(cls, value):
        return [str(v) for v in (value or []) if v]


class AnalysisResult(BaseModel):
    """Cached infringement and settlement judgment for one competitor."""
    model_config = ConfigDict(populate_by_name=True)

    settlement_probability: int = Field(default=50, alias="settlementProbability")
    settlement_factors: List[SettlementFactor] = Field(default_factory=list, alias="settlementFactors")
    company_risk: CompanyRisk = Field(default=CompanyRisk.MEDIUM, alias="companyRisk")
    products: List[ProductAssessment] = Field(default_factory=list)

    @field_validator("settlement_probability", mode="before")
    @classmethod
    def _clamp_settlement(cls, value):
        return clamp_probability(value)

    @field_validator("company_risk", mode="before")
    @classmethod
    def _known_risk(cls, value):
        value = str(value or "").strip().capitalize()
        return value if value in {r.value for r in CompanyRisk} else CompanyRisk.MEDIUM

    @classmethod
    def fallback(cls, reason: str = "Could not complete analysis") -> "AnalysisResult":
        return cls(
            settlement_probability=50,
            settlement_factors=[SettlementFactor(factor="Analysis Error", impact=Impact.NEUTRAL, detail=reason)],
            company_risk=CompanyRisk.MEDIUM,
            products=[],
        )

    @property
    def max_infringement(self) -> int:
        return max((p.infringement_probability for p in self.products), default=0)

    @property
    def mean_infringement(self) -> int:
        if not self.products:
            return 0
        return round(sum(p.infringement_probability for p in self.products) / len(self.products))

    def to_record(self) -> Dict[str, Any]:
        """camelCase payload as stored in ``analyses.results``."""
        return self.model_dump(mode="json", by_alias=True)


class ResearchedProduct(BaseModel):
    name: str
    url: str = ""
    description: str = ""
    category: str = "Product"

    @field_validator("url", "description", "category", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


class ResearchFindings(BaseModel):
    """Web-research answer describing a competitor."""
    model_config = ConfigDict(populate_by_name=True)

    official_name: str = Field(default="", alias="officialName")
    aliases: List[str] = Field(default_factory=list)
    website_url: str = Field(default="", alias="websiteUrl")
    description: str = ""
    technology_stack: List[str] = Field(default_factory=list, alias="technologyStack")
    products: List[ResearchedProduct] = Field(default_factory=list)

    @field_validator("official_name", "website_url", "description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @field_validator("aliases", "technology_stack", mode="before")
    @classmethod
    def _strings_only(cls, value):
        return [str(v).strip() for v in (value or []) if v and str(v).strip()]

    @field_validator("products", mode="before")
    @classmethod
    def _named_products(cls, value):
        return [p for p in (value or []) if isinstance(p, dict) and p.get("name")]

    @classmethod
    def fallback(cls, company_name: str) -> "ResearchFindings":
        return cls(official_name=company_name)


class AnalysisSummary(BaseModel):
    settlement_probability: int
    company_risk: CompanyRisk
    overall_infringement: int
    max_infringement: int


class ResearchResult(BaseModel):
    competitor_id: str
    competitor_name: str
    website: str = ""
    description: str = ""
    aliases: List[str] = Field(default_factory=list)
    products_added: int = 0
    patents_found: int = 0
    xml_fetched: int = 0
    analysis: Optional[AnalysisSummary] = None


class CompetitorState(str, Enum):
    RESEARCHING = "researching"
    PENDING_ANALYSIS = "pending_analysis"
    COMPLETE = "complete"


class ProductUrl(BaseModel):
    url: str
    description: str = ""


class CompetitorRequest(BaseModel):
    """One competitor submitted for batch research."""
    model_config = ConfigDict(populate_by_name=True)

    company_name: str = Field(alias="companyName", min_length=1)
    aliases: List[str] = Field(default_factory=list)
    website_url: Optional[str] = Field(default=None, alias="websiteUrl")
    patent_numbers: List[str] = Field(default_factory=list, alias="patentNumbers")
    product_urls: List[ProductUrl] = Field(default_factory=list, alias="productUrls")


class BatchItemResult(BaseModel):
    name: str
    success: bool
    id: Optional[str] = None
    documents_found: int = 0
    pages_extracted: int = 0
    aliases: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    research: Optional[ResearchResult] = None


class BatchResult(BaseModel):
    companies_processed: int = 0
    total_documents: int = 0
    total_pages: int = 0
    competitors: List[BatchItemResult] = Field(default_factory=list)


class UrlCheck(BaseModel):
    live: bool = False
    content_type: str = ""


class DiscoveredUrl(BaseModel):
    """A candidate product-documentation link found on a company site."""
    url: str
    description: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    signals: List[str] = Field(default_factory=list)
