"""
Price-monitor job pipeline.

The processor only orchestrates. Scraping, price parsing, price storage,
insights and e-mail are collaborators supplied by the deployment through
``PipelineCollaborators``; their methods may be plain functions or
coroutines.
"""

import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union

from ..clock import Clock, SystemClock
from ..errors import SearchNotFoundError
from ..queue.messages import JobMessage
from ..scheduler.search_store import SearchStore

logger = logging.getLogger(__name__)

PRICE_HISTORY_LIMIT = 10000


class Scraper(Protocol):
    def scrape(self, criteria: Dict[str, Any]) -> List[Dict[str, Any]]: ...


class PriceParser(Protocol):
    def process_hotels(self, hotels: List[Dict[str, Any]]) -> List[Dict[str, Any]]: ...


class PriceStore(Protocol):
    def create_prices(self, prices: List[Dict[str, Any]]) -> Any: ...

    def get_prices_by_search(self, search_id: str, limit: int = PRICE_HISTORY_LIMIT) -> List[Dict[str, Any]]: ...


class InsightsGenerator(Protocol):
    def generate(self, prices: List[Dict[str, Any]], criteria: Dict[str, Any]) -> Dict[str, Any]: ...


class Notifier(Protocol):
    def send(self, to: List[str], subject: str, search: Dict[str, Any],
             prices: List[Dict[str, Any]], insights: Dict[str, Any]) -> Any: ...


@dataclass
class PipelineCollaborators:
    """External services the job pipeline calls."""
    scraper: Scraper
    price_parser: PriceParser
    price_store: PriceStore
    insights: InsightsGenerator
    notifier: Notifier


def new_price_id() -> str:
    return f"price_{uuid.uuid4().hex[:16]}"


async def _call(func, *args, **kwargs):
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def build_price_records(hotels: List[Dict[str, Any]], search: Dict[str, Any],
                        user_id: str, extracted_at: str) -> List[Dict[str, Any]]:
    """Turn parsed hotels into price documents for one search run."""
    criteria = search.get('criteria') or {}
    records = []
    for hotel in hotels:
        parsed = hotel.get('priceParsed') or {}
        records.append({
            'id': new_price_id(),
            'searchId': search['id'],
            'userId': user_id,
            'hotelName': hotel.get('name'),
            'rating': hotel.get('rating'),
            'location': hotel.get('location'),
            'cityName': criteria.get('cityName'),
            'originalPriceText': hotel.get('price'),
            'parsedPrice': parsed.get('originalText') or hotel.get('price'),
            'numericPrice': parsed.get('numericPrice') or 0,
            'currency': parsed.get('currency') or criteria.get('currency'),
            'hotelUrl': hotel.get('url'),
            'units': hotel.get('units') or [],
            'extractedAt': extracted_at,
            'searchDestination': criteria.get('cityName'),
            'searchDate': extracted_at
        })
    return records


class JobProcessor:
    """Runs the scrape, parse, store, insights and notify pipeline for one job."""

    def __init__(self, search_store: SearchStore, collaborators: PipelineCollaborators,
                 clock: Optional[Clock] = None):
        self.search_store = search_store
        self.collaborators = collaborators
        self.clock = clock or SystemClock()

    async def process_job(self, job: Union[JobMessage, Dict[str, Any]]) -> None:
        """
        Process one job.

        Args:
            job: Decoded job message, or its wire body

        Raises:
            SearchNotFoundError: If the search no longer exists (not retried)
            Exception: Any collaborator failure, re-raised for retry classification
        """
        if not isinstance(job, JobMessage):
            job = JobMessage.from_body(job)

        search_id = job.search_id
        user_id = job.user_id
        started = time.monotonic()

        logger.info(
            f"Processing job: search_id={search_id}, user_id={user_id}, "
            f"schedule_type={job.schedule_type.value}"
        )

        try:
            hotels_processed = await self._run_pipeline(search_id, user_id)
        except Exception as e:
            logger.error(
                f"Job processing failed: search_id={search_id}, user_id={user_id}, "
                f"schedule_type={job.schedule_type.value}, "
                f"duration_ms={int((time.monotonic() - started) * 1000)}, error={str(e)}"
            )
            raise

        if hotels_processed is not None:
            logger.info(
                f"Job completed successfully: search_id={search_id}, "
                f"duration_ms={int((time.monotonic() - started) * 1000)}, "
                f"hotels_processed={hotels_processed}"
            )

    async def _run_pipeline(self, search_id: str, user_id: str) -> Optional[int]:
        c = self.collaborators

        # 1. Load the search
        search = await self.search_store.get(search_id, user_id)
        if search is None:
            logger.warning(f"Search {search_id} not found, message will be removed from queue")
            raise SearchNotFoundError(search_id)

        if not search.get('isActive'):
            logger.warning(f"Search {search_id} is inactive, skipping")
            return None

        criteria = search.get('criteria') or {}

        # 2. Scrape
        logger.info(f"Starting scrape for search {search_id}...")
        hotels = await _call(c.scraper.scrape, criteria)
        logger.info(f"Scraping completed for search {search_id}: {len(hotels)} hotels found")

        if not hotels:
            logger.warning(f"No hotels found in scrape results for search {search_id}")
            return None

        # 3. Parse and store prices
        parsed = await _call(c.price_parser.process_hotels, hotels)
        extracted_at = self.clock.now().isoformat()
        records = build_price_records(parsed, search, user_id, extracted_at)
        await _call(c.price_store.create_prices, records)
        logger.info(f"Stored {len(records)} prices for search {search_id}")

        # 4. Insights over the full price history
        history = await _call(c.price_store.get_prices_by_search, search_id, limit=PRICE_HISTORY_LIMIT)
        insights = await _call(c.insights.generate, history, criteria) or {}
        logger.info(f"Insights generated for search {search_id}")

        # 5. Notify
        recipients = search.get('emailRecipients') or []
        if recipients:
            logger.info(f"Sending email for search {search_id} to {len(recipients)} recipient(s)...")
            await _call(
                c.notifier.send,
                recipients,
                f"Price Monitor: {search.get('searchName', search_id)}",
                search,
                records,
                insights
            )
            logger.info(f"Email sent for search {search_id}")

        # 6. Record the run
        await self.search_store.update(search_id, user_id, {'lastRunAt': self.clock.now()})

        return len(records)
