from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
import pandas as pd
from bs4 import BeautifulSoup, Tag
from loguru import logger

from .config import (
    HTTP_CONNECT_TIMEOUT,
    HTTP_MAX_BYTES,
    HTTP_MAX_REDIRECTS,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
    REVIEWS_URL,
    STATUS_OK,
    STATUS_UNREACHABLE,
    Review,
)
from .normalize import basic_clean
from .pipeline_types import FetchOutcome

SELECTORS = {
    "review": "li.empReview",
    "sections": ".gdReview > div",
    "date_and_position": "span.common__EiReviewDetailsStyle__newUiJobLine > span",
    "recommends": ".recommends > div",
    "recommend_positive": "span.css-hcqxoa",
    "pros": 'span[data-test="pros"]',
    "cons": 'span[data-test="cons"]',
}

_PAGE_SUFFIX_RE = re.compile(r"(_P\d+)?\.htm$")
_TENURE_RE = re.compile(r", more than (\d+) years?")


def page_url(base_url: str, page_id: int) -> str:
    """
    Rewrite ``..._P<n>.htm`` (or plain ``.htm``) to point at ``page_id``.
    Query string and fragment are dropped.
    """
    parts = urlsplit(base_url)
    path, n = _PAGE_SUFFIX_RE.subn(f"_P{page_id}.htm", parts.path)
    if not n:
        raise ValueError(f"not a paginated review URL: {base_url}")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": HTTP_USER_AGENT},
        follow_redirects=True,
        timeout=httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
        max_redirects=HTTP_MAX_REDIRECTS,
    )


def _text(node: Optional[Tag]) -> str:
    return basic_clean(node.get_text(" ", strip=True)) if node is not None else ""


def _iso_date(raw: str) -> Optional[str]:
    ts = pd.to_datetime(raw, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def _parse_review(item: Tag) -> Optional[Review]:
    sections = item.select(SELECTORS["sections"])
    if len(sections) < 2:
        return None
    header, body = sections[0], sections[1]
    header_text = header.get_text(" ", strip=True)

    tenure_match = _TENURE_RE.search(header_text)

    date_raw = ""
    position = ""
    location = ""
    line = body.select_one(SELECTORS["date_and_position"])
    if line is not None:
        line_text = line.get_text(" ", strip=True)
        date_raw = line_text.split(" - ")[0]
        rest = line_text[len(date_raw) + 3:]
        position, _, location = rest.partition(" in ")

    recommend = False
    recommends = body.select(SELECTORS["recommends"])
    if recommends:
        recommend = recommends[0].select_one(SELECTORS["recommend_positive"]) is not None

    return Review(
        is_current_employee="Current Employee" in header_text,
        tenure=int(tenure_match.group(1)) if tenure_match else None,
        date=_iso_date(date_raw) if date_raw else None,
        position=position.strip(),
        location=location.strip(),
        recommend=recommend,
        pros=_text(body.select_one(SELECTORS["pros"])),
        cons=_text(body.select_one(SELECTORS["cons"])),
    )


def parse_reviews(html: str, min_date: Optional[str] = None) -> List[Review]:
    """
    Parse every review on a page, keeping those dated on/after ``min_date`` (YYYY-MM-DD).
    """
    soup = BeautifulSoup(html, "lxml")
    reviews: List[Review] = []
    skipped = 0
    for item in soup.select(SELECTORS["review"]):
        review = _parse_review(item)
        if review is None:
            skipped += 1
            continue
        if min_date and (review.date is None or review.date < min_date):
            continue
        reviews.append(review)

    if skipped:
        logger.warning("Skipped {} unparseable review blocks", skipped)
    return reviews


class ReviewExtractor:
    """
    Fetches one review page and parses it. Never raises for HTTP trouble:
    problems come back as a non-200 ``FetchOutcome``.
    """

    def __init__(self, base_url: str = REVIEWS_URL, client: Optional[httpx.AsyncClient] = None):
        page_url(base_url, 1)  # validate early
        self.base_url = base_url
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = _http_client()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __call__(self, page_id: int, min_date: Optional[str] = None) -> FetchOutcome:
        url = page_url(self.base_url, page_id)
        logger.info("Fetching review page {}: {}", page_id, url)
        try:
            r = await self.client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Review page {} fetch error: {}", page_id, e)
            return FetchOutcome.failure(STATUS_UNREACHABLE, str(e))

        if r.status_code != STATUS_OK:
            logger.warning("Review page {}: HTTP {}", page_id, r.status_code)
            return FetchOutcome.failure(r.status_code, f"HTTP {r.status_code} for {url}")
        if len(r.content) > HTTP_MAX_BYTES:
            return FetchOutcome.failure(STATUS_UNREACHABLE, f"Page too large ({len(r.content)} bytes) for {url}")

        reviews = parse_reviews(r.text, min_date)
        logger.info("Parsed {} reviews from page {}", len(reviews), page_id)
        return FetchOutcome.success(reviews)
