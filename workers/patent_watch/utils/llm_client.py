"""Anthropic chat completion wrapper.

Centralises rate-limit retries, token quota and JSON extraction so callers
only deal with prompts and parsed answers.
"""

import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import anthropic
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt

from ..models.patent import AnalyzedClaim, ElementMatch, PageContent, PatentAnalysis
from .config import RateLimitPolicy, Settings
from .errors import JSONExtractionError, LLMError, RateLimitExceededError
from .observability import metrics
from .quota import TokenBucket

logger = structlog.get_logger(__name__)

WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search"}

_FENCE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)

PATENT_PAGES_PROMPT = """Analyze this patent document and extract structured information.
IMPORTANT: Track which PAGE NUMBER each piece of information comes from.

{pages}

Return ONLY valid JSON with this structure:
{{
  "patent_number": "US-XXXXXXX-XX",
  "title": "Full patent title",
  "abstract": "Patent abstract/summary",
  "claims": [
    {{
      "claim_number": 1,
      "claim_type": "independent",
      "page_number": 7,
      "claim_text": "Full text of claim 1",
      "depends_on": null,
      "elements": [
        {{"element": "network interface", "page_number": 7, "text_snippet": "exact text showing this element"}}
      ]
    }}
  ]
}}

Rules:
- Extract ALL claims from the patent
- Mark each claim "independent" or "dependent"; dependent claims name their parent in "depends_on"
- Break each claim into its component elements
- Track the PAGE NUMBER where each element is described and quote a short snippet
- Escape all quotes and backslashes inside JSON strings"""

COMPARE_PROMPT = """Compare these patent claims against this competitor document.
Find which elements from the patent claims appear in the competitor document.

PATENT CLAIMS:
{claims}

COMPETITOR DOCUMENT ({competitor}):
{pages}

Return a JSON array of matches:
[
  {{
    "claim_number": 1,
    "element": "network interface",
    "found_on_page": 12,
    "text_snippet": "exact text from competitor doc",
    "confidence_score": 0.95
  }}
]

Only include matches where you find clear evidence of the element in the competitor doc.
Track PAGE NUMBERS precisely."""


def _parse_candidate(candidate: str):
    try:
        return json.loads(candidate)
    except ValueError:
        return None


def extract_json(text: str, array: bool = False) -> Union[Dict[str, Any], List[Any]]:
    """Parse the JSON payload of a model answer.

    A fenced ```json block wins. Otherwise the span from the first opening
    brace (or bracket) to the last closing one is parsed.
    """
    text = text or ""
    expected = list if array else dict
    opening, closing = ("[", "]") if array else ("{", "}")

    fenced = _FENCE.search(text)
    if fenced:
        parsed = _parse_candidate(fenced.group(1))
        if isinstance(parsed, expected):
            return parsed

    start = text.find(opening)
    end = text.rfind(closing)
    if start != -1 and end > start:
        parsed = _parse_candidate(text[start:end + 1])
        if isinstance(parsed, expected):
            return parsed

    raise JSONExtractionError("No JSON payload found in model response", raw_text=text)


def annotate_pages(pages: Sequence[PageContent]) -> str:
    return "\n\n".join(f"=== PAGE {page.page_number} ===\n{page.text}" for page in pages)


def _retry_after(exc: BaseException) -> Optional[str]:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    return response.headers.get("retry-after")


class LLMClient:
    """Async client with rate-limit retries and a token budget."""

    def __init__(self, settings: Settings, client: Optional[anthropic.AsyncAnthropic] = None,
                 quota: Optional[TokenBucket] = None,
                 policy: Optional[RateLimitPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.model = settings.anthropic_model
        self.client = client or anthropic.AsyncAnthropic(
            api_key=settings.require("anthropic_api_key"),
            max_retries=0,
        )
        self.quota = quota or TokenBucket(settings.llm_tokens_per_minute)
        self.policy = policy or settings.llm_rate_limit
        self._sleep = sleep

    async def close(self):
        await self.client.close()

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception()
        return self.policy.wait_for(retry_state.attempt_number - 1, _retry_after(exc))

    def _before_sleep(self, retry_state):
        metrics.llm_retries_total.inc()
        logger.warning(
            "Rate limited by model API, retrying",
            attempt=retry_state.attempt_number,
            max_retries=self.policy.max_retries,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def _create(self, request: Dict[str, Any]):
        raw = await self.client.messages.with_raw_response.create(**request)
        self.quota.observe_headers(raw.headers)
        return raw.parse()

    async def complete(self, prompt: str, max_tokens: int = 3000, use_search_tool: bool = False) -> str:
        """Send one user message and return the concatenated text blocks."""
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if use_search_tool:
            request["tools"] = [WEB_SEARCH_TOOL]

        waited = await self.quota.acquire(len(prompt) // 4 + max_tokens)
        metrics.llm_quota_wait_seconds.observe(waited)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(anthropic.RateLimitError),
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=self._wait,
            sleep=self._sleep,
            before_sleep=self._before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    message = await self._create(request)
        except RetryError as e:
            metrics.llm_requests_total.labels(status="rate_limited").inc()
            last = e.last_attempt.exception()
            raise RateLimitExceededError(
                f"Rate limited after {self.policy.max_retries} retries",
                status=429,
                body=str(getattr(last, "body", "") or ""),
            ) from last
        except anthropic.APIStatusError as e:
            metrics.llm_requests_total.labels(status="error").inc()
            raise LLMError(e.message, status=e.status_code, body=str(e.body or "")) from e
        except anthropic.APIConnectionError as e:
            metrics.llm_requests_total.labels(status="error").inc()
            raise LLMError(str(e)) from e

        metrics.llm_requests_total.labels(status="success").inc()
        text = "\n".join(block.text for block in message.content if getattr(block, "type", None) == "text")
        logger.info("Model response received", characters=len(text), stop_reason=message.stop_reason)
        return text

    async def complete_json(self, prompt: str, max_tokens: int = 3000, use_search_tool: bool = False,
                            array: bool = False) -> Union[Dict[str, Any], List[Any]]:
        text = await self.complete(prompt, max_tokens=max_tokens, use_search_tool=use_search_tool)
        return extract_json(text, array=array)

    async def analyze_patent_pages(self, pages: Sequence[PageContent]) -> PatentAnalysis:
        """Structure an OCR'd patent into claims and elements with page numbers."""
        data = await self.complete_json(PATENT_PAGES_PROMPT.format(pages=annotate_pages(pages)), max_tokens=8000)
        return PatentAnalysis.model_validate(data)

    async def compare_with_competitor(self, claims: Sequence[AnalyzedClaim],
                                      competitor_pages: Sequence[PageContent],
                                      competitor_name: str) -> List[ElementMatch]:
        claims_text = "\n\n".join(f"Claim {claim.claim_number}: {claim.claim_text}" for claim in claims)
        prompt = COMPARE_PROMPT.format(
            claims=claims_text,
            competitor=competitor_name,
            pages=annotate_pages(competitor_pages),
        )
        data = await self.complete_json(prompt, max_tokens=8000, array=True)
        matches = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                matches.append(ElementMatch.model_validate(item))
            except ValueError as e:
                logger.warning("Discarding malformed element match", error=str(e))
        return matches
