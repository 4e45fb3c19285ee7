"""Database client for PostgreSQL operations."""

import json
import uuid
from typing import Optional, List, Sequence

import asyncpg
import structlog

from ..models.competitor import (
    AnalysisResult,
    CompetitorDocument,
    CompetitorState,
    DocumentStatus,
    normalize_name,
)
from ..models.patent import AnalyzedClaim, PageContent, PatentRecord
from .config import Settings
from .errors import ConfigurationError

logger = structlog.get_logger(__name__)

DOCUMENT_COLUMNS = """
    id, competitor_id, source_url, document_name, document_type, total_pages,
    extracted_text, status, patent_number, application_number
"""


def _document_from_row(row) -> CompetitorDocument:
    data = dict(row)
    data["id"] = str(data["id"])
    data["competitor_id"] = str(data["competitor_id"])
    return CompetitorDocument(**data)


def is_uuid(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


def merge_documents(existing: CompetitorDocument, incoming: CompetitorDocument) -> CompetitorDocument:
    """Combine a stored document with a new observation of the same evidence.

    Status only advances. Non-empty text replaces empty text, and replaces
    stored text when the new observation carries a higher status.
    """
    status = DocumentStatus.advance(existing.status, incoming.status)
    upgraded = incoming.status.rank > existing.status.rank
    text = existing.extracted_text
    if incoming.extracted_text and (not text or upgraded):
        text = incoming.extracted_text
    return existing.model_copy(update={
        "status": status,
        "extracted_text": text,
        "source_url": existing.source_url or incoming.source_url,
        "total_pages": max(existing.total_pages, incoming.total_pages),
        "patent_number": existing.patent_number or incoming.patent_number,
        "application_number": existing.application_number or incoming.application_number,
    })


class DatabaseClient:
    """Client for PostgreSQL database operations."""

    def __init__(self, settings: Settings, pool=None):
        self.pool = pool
        self.connection_string = settings.database_url

    async def connect(self):
        """Connect to the database."""
        if self.pool:
            return
        if not self.connection_string:
            raise ConfigurationError("DATABASE_URL is not configured")
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=10
            )
            logger.info("Connected to database")
        except Exception as e:
            logger.error("Database connection failed", error=str(e))
            raise

    async def disconnect(self):
        """Disconnect from the database."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("Disconnected from database")
        except Exception as e:
            logger.error("Database disconnection failed", error=str(e))

    # Competitors

    async def create_competitor(self, user_id: str, name: str, website: Optional[str], notes: str) -> str:
        async with self.pool.acquire() as conn:
            competitor_id = await conn.fetchval(
                """
                INSERT INTO competitors (user_id, name, website, notes)
                VALUES ($1, $2, $3, $4)
                RETURNING id
                """,
                user_id, name, website or None, notes
            )
        logger.info("Created competitor", competitor_id=str(competitor_id), name=name)
        return str(competitor_id)

    async def update_competitor(self, competitor_id: str, website: Optional[str], notes: str):
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE competitors
                SET website = COALESCE($2, website), notes = $3, updated_at = now()
                WHERE id = $1
                """,
                competitor_id, website or None, notes
            )

    async def competitor_state(self, competitor_id: str) -> CompetitorState:
        """Derive the research state from what has been stored."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    EXISTS (SELECT 1 FROM competitor_documents WHERE competitor_id = $1) AS has_documents,
                    EXISTS (SELECT 1 FROM analyses WHERE competitor_id = $1) AS has_analysis
                """,
                competitor_id
            )
        if row["has_analysis"]:
            return CompetitorState.COMPLETE
        if row["has_documents"]:
            return CompetitorState.PENDING_ANALYSIS
        return CompetitorState.RESEARCHING

    # Competitor documents

    async def find_document(self, competitor_id: str, document_name: Optional[str] = None,
                            application_number: Optional[str] = None) -> Optional[CompetitorDocument]:
        """Look up a document by application number, else by normalized name."""
        async with self.pool.acquire() as conn:
            return await self._select_document(conn, competitor_id, document_name, application_number)

    async def _select_document(self, conn, competitor_id, document_name, application_number,
                               for_update: bool = False) -> Optional[CompetitorDocument]:
        lock = " FOR UPDATE" if for_update else ""
        row = None
        if application_number:
            row = await conn.fetchrow(
                f"SELECT {DOCUMENT_COLUMNS} FROM competitor_documents "
                f"WHERE competitor_id = $1 AND application_number = $2{lock}",
                competitor_id, application_number
            )
        if row is None and document_name:
            row = await conn.fetchrow(
                f"SELECT {DOCUMENT_COLUMNS} FROM competitor_documents "
                f"WHERE competitor_id = $1 AND lower(btrim(document_name)) = $2{lock}",
                competitor_id, normalize_name(document_name)
            )
        return _document_from_row(row) if row else None

    async def upsert_competitor_document(self, document: CompetitorDocument) -> CompetitorDocument:
        """Insert a document or merge it into the stored copy with the same natural key."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await self._select_document(
                    conn, document.competitor_id, document.document_name,
                    document.application_number, for_update=True
                )
                if existing is None:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO competitor_documents (
                            competitor_id, source_url, document_name, document_type, total_pages,
                            extracted_text, status, patent_number, application_number
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        ON CONFLICT DO NOTHING
                        RETURNING {DOCUMENT_COLUMNS}
                        """,
                        document.competitor_id,
                        document.source_url,
                        document.document_name.strip(),
                        document.document_type.value,
                        document.total_pages,
                        document.extracted_text,
                        document.status.value,
                        document.patent_number,
                        document.application_number,
                    )
                    if row is not None:
                        stored = _document_from_row(row)
                        logger.info("Stored competitor document", document_id=stored.id,
                                    document_type=stored.document_type.value, status=stored.status.value)
                        return stored
                    # Lost an insert race; merge into the winner.
                    existing = await self._select_document(
                        conn, document.competitor_id, document.document_name,
                        document.application_number, for_update=True
                    )

                merged = merge_documents(existing, document)
                await conn.execute(
                    """
                    UPDATE competitor_documents
                    SET source_url = $2, total_pages = $3, extracted_text = $4, status = $5,
                        patent_number = $6, application_number = $7, updated_at = now()
                    WHERE id = $1
                    """,
                    merged.id, merged.source_url, merged.total_pages, merged.extracted_text,
                    merged.status.value, merged.patent_number, merged.application_number
                )
                logger.info("Merged competitor document", document_id=merged.id, status=merged.status.value)
                return merged

    async def insert_document_pages(self, document_id: str, pages: Sequence[PageContent]):
        async with self.pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO competitor_document_pages (document_id, page_number, text, raw_text)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (document_id, page_number)
                DO UPDATE SET text = EXCLUDED.text, raw_text = EXCLUDED.raw_text
                """,
                [(document_id, page.page_number, page.text, page.raw_text) for page in pages]
            )

    async def list_competitor_documents(self, competitor_id: str) -> List[CompetitorDocument]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {DOCUMENT_COLUMNS} FROM competitor_documents "
                "WHERE competitor_id = $1 ORDER BY created_at",
                competitor_id
            )
        return [_document_from_row(row) for row in rows]

    # Analyses

    async def upsert_analysis(self, competitor_id: str, analysis: AnalysisResult,
                              patent_id: Optional[str] = None) -> str:
        """Replace the cached analysis for a competitor."""
        async with self.pool.acquire() as conn:
            analysis_id = await conn.fetchval(
                """
                INSERT INTO analyses (competitor_id, patent_id, status, results, infringement_score)
                VALUES ($1, $2, 'complete', $3::jsonb, $4)
                ON CONFLICT (competitor_id) DO UPDATE
                SET patent_id = EXCLUDED.patent_id, status = EXCLUDED.status,
                    results = EXCLUDED.results, infringement_score = EXCLUDED.infringement_score,
                    updated_at = now()
                RETURNING id
                """,
                competitor_id,
                patent_id if is_uuid(patent_id) else None,
                json.dumps(analysis.to_record()),
                analysis.max_infringement
            )
        logger.info("Stored analysis", competitor_id=competitor_id, infringement_score=analysis.max_infringement)
        return str(analysis_id)

    # Companies and patents

    async def get_or_create_company(self, user_id: str, name: str, aliases: Sequence[str] = ()) -> str:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                company_id = await conn.fetchval(
                    "SELECT id FROM companies WHERE user_id = $1 AND lower(name) = lower($2) FOR UPDATE",
                    user_id, name
                )
                if company_id is None:
                    company_id = await conn.fetchval(
                        "INSERT INTO companies (user_id, name, aliases) VALUES ($1, $2, $3) RETURNING id",
                        user_id, name, list(aliases)
                    )
        return str(company_id)

    async def upsert_patent(self, user_id: str, record: PatentRecord, company_id: Optional[str] = None,
                            xml_url: Optional[str] = None, xml_content: Optional[str] = None) -> str:
        """Store a discovered patent, keyed by application number per user."""
        async with self.pool.acquire() as conn:
            patent_id = await conn.fetchval(
                """
                INSERT INTO patents (
                    user_id, company_id, patent_number, application_number, title, filing_date,
                    grant_date, inventors, assignee, abstract, pdf_url, xml_content, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (user_id, application_number) WHERE application_number IS NOT NULL
                DO UPDATE SET
                    patent_number = COALESCE(EXCLUDED.patent_number, patents.patent_number),
                    title = COALESCE(EXCLUDED.title, patents.title),
                    abstract = COALESCE(NULLIF(EXCLUDED.abstract, ''), patents.abstract),
                    pdf_url = COALESCE(EXCLUDED.pdf_url, patents.pdf_url),
                    xml_content = COALESCE(EXCLUDED.xml_content, patents.xml_content),
                    status = CASE WHEN patents.status = 'xml_available' THEN patents.status
                                  ELSE EXCLUDED.status END
                RETURNING id
                """,
                user_id,
                company_id,
                record.patent_number or record.application_number,
                record.application_number,
                record.title,
                record.filing_date,
                record.grant_date,
                ", ".join(record.inventors),
                record.applicants[0] if record.applicants else None,
                record.abstract,
                xml_url,
                xml_content,
                DocumentStatus.XML_AVAILABLE.value if xml_url else DocumentStatus.METADATA_ONLY.value,
            )
        return str(patent_id)

    async def create_uploaded_patent(self, user_id: str, patent_number: str, title: str, abstract: str,
                                     file_url: str, file_name: str, total_pages: int) -> str:
        async with self.pool.acquire() as conn:
            patent_id = await conn.fetchval(
                """
                INSERT INTO patents (
                    user_id, patent_number, title, abstract, file_url, file_name, total_pages, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, 'extracted')
                RETURNING id
                """,
                user_id, patent_number, title, abstract, file_url, file_name, total_pages
            )
        logger.info("Created patent", patent_id=str(patent_id), patent_number=patent_number)
        return str(patent_id)

    async def insert_claims(self, patent_id: str, claims: Sequence[AnalyzedClaim]):
        async with self.pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO claims (
                    patent_id, claim_number, claim_type, claim_text, page_number, depends_on, elements
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                ON CONFLICT (patent_id, claim_number) DO UPDATE
                SET claim_type = EXCLUDED.claim_type, claim_text = EXCLUDED.claim_text,
                    page_number = EXCLUDED.page_number, depends_on = EXCLUDED.depends_on,
                    elements = EXCLUDED.elements
                """,
                [
                    (
                        patent_id,
                        claim.claim_number,
                        claim.claim_type.value,
                        claim.claim_text,
                        claim.page_number,
                        claim.depends_on,
                        json.dumps([element.model_dump() for element in claim.elements]),
                    )
                    for claim in claims
                ]
            )
