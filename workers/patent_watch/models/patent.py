"""Patent data models for the workers."""

import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PageContent(BaseModel):
    """Text recognized on one physical page."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    text: str = ""
    raw_text: str = ""


class ExtractionResult(BaseModel):
    """Page-indexed OCR output for one document."""
    pages: List[PageContent]
    total_pages: int = Field(ge=0)
    full_text: str = ""

    @model_validator(mode="after")
    def _pages_are_contiguous(self):
        numbers = [page.page_number for page in self.pages]
        if numbers != list(range(1, self.total_pages + 1)):
            raise ValueError("pages must be numbered 1..total_pages without gaps")
        return self


class PatentRecord(BaseModel):
    """A patent application as returned by the registry search."""
    application_number: str
    patent_number: Optional[str] = None
    publication_number: Optional[str] = None
    title: Optional[str] = None
    filing_date: Optional[str] = None
    grant_date: Optional[str] = None
    applicants: List[str] = Field(default_factory=list)
    inventors: List[str] = Field(default_factory=list)
    abstract: Optional[str] = None

    @field_validator("application_number")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        digits = re.sub(r"\D", "", value or "")
        if not digits:
            raise ValueError("application_number must contain digits")
        return digits


class ClaimType(str, Enum):
    INDEPENDENT = "independent"
    DEPENDENT = "dependent"


class ClaimClassification(BaseModel):
    """Heuristic dependency label with the evidence that produced it."""
    label: ClaimType
    confidence: float = Field(ge=0.0, le=1.0)
    signals: List[str] = Field(default_factory=list)


class Claim(BaseModel):
    """Model for a patent claim."""
    model_config = ConfigDict(frozen=True)

    number: int = Field(ge=1)
    type: ClaimType
    text: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ParsedPatentXml(BaseModel):
    """Read-only projection of a grant or application XML document."""
    model_config = ConfigDict(frozen=True)

    title: str = ""
    abstract: str = ""
    claims: List[Claim] = Field(default_factory=list)
    description: str = ""
    inventors: List[str] = Field(default_factory=list)
    assignee: str = ""
    filing_date: str = ""
    application_number: str = ""
    patent_number: str = ""


class XmlProduct(str, Enum):
    GRANT = "grant"
    APPLICATION = "application"


class PatentXmlResult(BaseModel):
    """Raw XML fetched from the bulk-data API."""
    xml_content: str
    xml_url: str
    product: XmlProduct
    abstract: str = ""


class ClaimElement(BaseModel):
    element: str
    page_number: int = Field(default=1, ge=1)
    text_snippet: str = ""


class AnalyzedClaim(BaseModel):
    """A claim structured by the language model from OCR pages."""
    claim_number: int = Field(ge=1)
    claim_type: ClaimType = ClaimType.INDEPENDENT
    page_number: int = Field(default=1, ge=1)
    claim_text: str = ""
    elements: List[ClaimElement] = Field(default_factory=list)
    depends_on: Optional[int] = None


class PatentAnalysis(BaseModel):
    """Model output for an uploaded patent PDF."""
    patent_number: str = ""
    title: str = ""
    abstract: str = ""
    claims: List[AnalyzedClaim] = Field(default_factory=list)


class ElementMatch(BaseModel):
    """Evidence of a claim element inside a competitor document."""
    claim_number: int
    element: str
    found_on_page: int = Field(default=1, ge=1)
    text_snippet: str = ""
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            return min(1.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            return 0.0
