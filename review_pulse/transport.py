"""
Request/response bridge between the pipeline and the extractor context.

The pipeline never calls the extractor directly. It posts a message to an
``Endpoint`` (something living on the other side of an isolation boundary:
another task, another process, another machine) and waits for a reply that
carries the same ``page_id``. Replies come back through
``TransportBridge.deliver``.

Guarantees:
  - several requests can be outstanding at once (one per worker)
  - each reply resolves exactly one waiting request; late or duplicate
    replies are dropped
  - an unreachable endpoint, an endpoint error or a timeout resolves the
    request as ``FetchOutcome(status=-1)``; callers are never left hanging

Messages are plain dicts so they can be serialised by whatever endpoint
sits behind the bridge.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from loguru import logger
from pydantic import ValidationError

from .config import REQUEST_TIMEOUT_SECONDS, STATUS_OK, STATUS_UNREACHABLE, Review
from .errors import DuplicateRequestError
from .pipeline_types import FetchOutcome

CRAWL_REVIEWS = "crawl_reviews"
CRAWL_REVIEWS_FINISHED = "crawl_reviews_finished"

Message = Dict[str, Any]
ReplyCallback = Callable[[Message], Any]
Extractor = Callable[..., Awaitable[FetchOutcome]]


class Endpoint(Protocol):
    def connect(self, on_reply: ReplyCallback) -> None: ...

    async def post(self, message: Message) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

def encode_reply(page_id: int, outcome: FetchOutcome) -> Message:
    return {
        "name": CRAWL_REVIEWS_FINISHED,
        "page_id": page_id,
        "status": outcome.status,
        "reviews": None if outcome.records is None else [r.model_dump() for r in outcome.records],
        "detail": outcome.detail,
    }


def decode_reply(reply: Message) -> FetchOutcome:
    status = reply.get("status", STATUS_UNREACHABLE)
    if not isinstance(status, int):
        return FetchOutcome.failure(STATUS_UNREACHABLE, f"malformed status {status!r}")
    if status != STATUS_OK:
        return FetchOutcome.failure(status, str(reply.get("detail") or ""))
    try:
        records = [Review.model_validate(r) for r in (reply.get("reviews") or [])]
    except ValidationError as e:
        return FetchOutcome.failure(STATUS_UNREACHABLE, f"malformed reviews: {e}")
    return FetchOutcome.success(records)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class TransportBridge:
    def __init__(self, endpoint: Endpoint, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.endpoint = endpoint
        self.timeout = timeout
        self._pending: Dict[int, asyncio.Future] = {}
        endpoint.connect(self.deliver)

    @property
    def outstanding(self) -> Set[int]:
        return set(self._pending)

    async def request(self, page_id: int, params: Optional[Dict[str, Any]] = None) -> FetchOutcome:
        if page_id in self._pending:
            raise DuplicateRequestError(f"page {page_id} already has an outstanding request")

        future = asyncio.get_running_loop().create_future()
        self._pending[page_id] = future
        message = {"name": CRAWL_REVIEWS, "page_id": page_id, **(params or {})}
        try:
            try:
                await self.endpoint.post(message)
            except Exception as e:
                logger.warning("Endpoint unreachable for page {}: {}", page_id, e)
                return FetchOutcome.failure(STATUS_UNREACHABLE, f"unreachable: {e}")

            try:
                return await asyncio.wait_for(future, timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("No reply for page {} after {}s", page_id, self.timeout)
                return FetchOutcome.failure(STATUS_UNREACHABLE, "timed out")
        finally:
            self._pending.pop(page_id, None)

    async def close(self) -> None:
        await self.endpoint.close()

    def deliver(self, reply: Message) -> bool:
        """Route a reply to its waiting request. Returns False when dropped."""
        page_id = reply.get("page_id")
        future = self._pending.get(page_id)  # type: ignore[arg-type]
        if future is None or future.done():
            logger.warning("Dropping reply for page {} with no waiting request", page_id)
            return False
        future.set_result(decode_reply(reply))
        return True


# ---------------------------------------------------------------------------
# In-process endpoint
# ---------------------------------------------------------------------------

_CLOSE = object()


class MailboxEndpoint:
    """
    Extractor living behind a mailbox, served by its own task.

    Each ``crawl_reviews`` message is handled concurrently and answered
    through the connected reply callback. Unknown messages get no reply,
    which the bridge turns into a timeout.
    """

    def __init__(self, extractor: Extractor):
        self._extractor = extractor
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._on_reply: Optional[ReplyCallback] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._handlers: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self, on_reply: ReplyCallback) -> None:
        self._on_reply = on_reply

    async def post(self, message: Message) -> None:
        if self._closed:
            raise ConnectionError("endpoint is closed")
        if self._on_reply is None:
            raise ConnectionError("endpoint has no reply channel")
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._serve(), name="mailbox-endpoint")
        self._mailbox.put_nowait(message)

    async def close(self) -> None:
        """Refuse new messages, finish the ones in hand, then close the extractor."""
        if self._closed:
            return
        self._closed = True
        if self._loop_task is not None:
            self._mailbox.put_nowait(_CLOSE)
            await self._loop_task
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)
        aclose = getattr(self._extractor, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _serve(self) -> None:
        while True:
            message = await self._mailbox.get()
            if message is _CLOSE:
                return
            task = asyncio.create_task(self._handle(message))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    async def _handle(self, message: Message) -> None:
        params = dict(message)
        name = params.pop("name", None)
        page_id = params.pop("page_id", 0)
        if name != CRAWL_REVIEWS or not isinstance(page_id, int) or page_id <= 0:
            logger.warning("Ignoring unexpected message {}", message)
            return

        try:
            outcome = await self._extractor(page_id, **params)
        except Exception as e:
            logger.exception("Extractor crashed on page {}", page_id)
            outcome = FetchOutcome.failure(STATUS_UNREACHABLE, f"extractor error: {e}")

        if self._on_reply is not None:
            self._on_reply(encode_reply(page_id, outcome))
