"""Regex-based extractors for USPTO grant and application XML.

Bulk-data files are frequently concatenated or truncated, so these functions
work on raw text rather than a parsed tree and never raise on malformed input.
"""

import html
import re
from typing import List, Optional

from ..models.patent import Claim, ClaimClassification, ClaimType, ParsedPatentXml

_FLAGS = re.IGNORECASE | re.DOTALL

ABSTRACT_PATTERNS = [
    re.compile(rf"<{tag}[^>]*>(.*?)</{tag}>", _FLAGS)
    for tag in ("abstract", "us-abstract", "subdoc-abstract")
]

DESCRIPTION_PATTERNS = [
    re.compile(rf"<{tag}[^>]*>(.*?)</{tag}>", _FLAGS)
    for tag in ("description", "us-description", "subdoc-description", "specification")
]

CLAIM_PATTERN = re.compile(r'<claim\b[^>]*id="CLM-(\d+)"[^>]*>(.*?)</claim>', _FLAGS)
CLAIMS_BLOCK_PATTERN = re.compile(r"<claims\b[^>]*>(.*?)</claims>", _FLAGS)
CLAIM_START_PATTERN = re.compile(r"<claim(?:\s[^>]*)?>", re.IGNORECASE)

CLAIM_REF_PATTERN = re.compile(r"<claim-ref\b[^>]*>", re.IGNORECASE)
CLAIM_MENTION_PATTERN = re.compile(r"\b(?:claims?\s+\d+|any\s+(?:one\s+)?of\s+(?:the\s+)?(?:preceding\s+)?claims)\b", re.IGNORECASE)

TAG_PATTERN = re.compile(r"<[^>]+>")
WHITESPACE_PATTERN = re.compile(r"\s+")

MIN_SECTION_LENGTH = 10
MAX_INVENTORS = 20


def clean_text(fragment: str) -> str:
    """Strip tags, unescape entities and collapse whitespace."""
    text = TAG_PATTERN.sub(" ", fragment or "")
    text = html.unescape(text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _first_match(xml: str, pattern: str) -> str:
    match = re.search(pattern, xml, _FLAGS)
    return clean_text(match.group(1)) if match else ""


def extract_abstract(xml: str) -> str:
    for pattern in ABSTRACT_PATTERNS:
        match = pattern.search(xml or "")
        if match:
            text = clean_text(match.group(1))
            if len(text) > MIN_SECTION_LENGTH:
                return text
    return ""


def extract_description(xml: str) -> str:
    for pattern in DESCRIPTION_PATTERNS:
        match = pattern.search(xml or "")
        if match:
            return clean_text(match.group(1))
    return ""


def classify_claim(text: str, raw: str = "") -> ClaimClassification:
    """Label a claim as dependent or independent.

    A ``<claim-ref>`` element is structural evidence. A textual "claim N"
    may also be a non-structural mention, so it scores lower.
    """
    if raw and CLAIM_REF_PATTERN.search(raw):
        return ClaimClassification(label=ClaimType.DEPENDENT, confidence=0.95, signals=["claim-ref"])
    mention = CLAIM_MENTION_PATTERN.search(text or "")
    if mention:
        return ClaimClassification(
            label=ClaimType.DEPENDENT, confidence=0.8, signals=[f"mention:{mention.group(0).lower()}"]
        )
    return ClaimClassification(label=ClaimType.INDEPENDENT, confidence=0.7, signals=[])


def extract_claims(xml: str) -> List[Claim]:
    xml = xml or ""
    claims = []
    for index, match in enumerate(CLAIM_PATTERN.finditer(xml), start=1):
        raw = match.group(2)
        text = clean_text(raw)
        classification = classify_claim(text, raw)
        claims.append(Claim(
            number=int(match.group(1)) or index,
            type=classification.label,
            text=text,
            confidence=classification.confidence,
        ))
    if claims:
        return claims

    block = CLAIMS_BLOCK_PATTERN.search(xml)
    if not block:
        return []

    pieces = [piece for piece in CLAIM_START_PATTERN.split(block.group(1)) if piece.strip()]
    for index, raw in enumerate(pieces, start=1):
        text = clean_text(raw)
        if len(text) <= MIN_SECTION_LENGTH:
            continue
        classification = classify_claim(text, raw)
        claims.append(Claim(number=index, type=classification.label, text=text,
                            confidence=classification.confidence))
    return claims


def extract_grant_number(xml: str) -> str:
    match = re.search(r'<us-patent-grant\b[^>]*\bdoc-number="(\d+)"', xml or "", re.IGNORECASE)
    if match:
        return match.group(1)
    return _first_match(xml or "", r"<publication-reference[^>]*>.*?<doc-number[^>]*>(.*?)</doc-number>")


def extract_inventors(xml: str) -> List[str]:
    given = [clean_text(m) for m in re.findall(r"<given-name[^>]*>(.*?)</given-name>", xml, _FLAGS)]
    family = [clean_text(m) for m in re.findall(r"<family-name[^>]*>(.*?)</family-name>", xml, _FLAGS)]
    inventors = []
    for index in range(max(len(given), len(family))):
        first = given[index] if index < len(given) else ""
        last = family[index] if index < len(family) else ""
        name = f"{first} {last}".strip()
        if name:
            inventors.append(name)
    return inventors[:MAX_INVENTORS]


def parse_patent_xml(xml: Optional[str]) -> ParsedPatentXml:
    """Project a patent XML document onto the fields the pipeline uses."""
    xml = xml or ""
    title = (_first_match(xml, r"<invention-title[^>]*>(.*?)</invention-title>")
             or _first_match(xml, r"<title-of-invention[^>]*>(.*?)</title-of-invention>"))
    assignee = (_first_match(xml, r"<assignee[^>]*>.*?<orgname[^>]*>(.*?)</orgname>")
                or _first_match(xml, r"<us-applicant[^>]*>.*?<orgname[^>]*>(.*?)</orgname>"))
    application_number = (
        _first_match(xml, r"<application-reference[^>]*>.*?<doc-number[^>]*>(.*?)</doc-number>")
        or _first_match(xml, r"<doc-number[^>]*>(.*?)</doc-number>")
    )

    return ParsedPatentXml(
        title=title,
        abstract=extract_abstract(xml),
        claims=extract_claims(xml),
        description=extract_description(xml),
        inventors=extract_inventors(xml),
        assignee=assignee,
        filing_date=_first_match(xml, r"<filing-date[^>]*>(.*?)</filing-date>"),
        application_number=application_number,
        patent_number=extract_grant_number(xml),
    )
