"""Async HTTP client for the USAJobs search API"""

import asyncio
import random
from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from federal_job_finder.errors import (
    FatalError,
    NotFoundError,
    RateLimitError,
    TransientError,
)
from federal_job_finder.models import JobRecord, SearchCriteria, SearchResponse

DEFAULT_BASE_URL = "https://data.usajobs.gov/api"
SEARCH_PATH = "/search"
JOB_PAGE_URL = "https://www.usajobs.gov/job/{job_id}"

DEFAULT_HEADERS = {
    "Accept": "application/json",
}


def create_client(
    api_key: str,
    user_agent: str,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an httpx.AsyncClient carrying the USAJobs auth headers

    Args:
        api_key: USAJobs Authorization-Key
        user_agent: Registered e-mail (USAJobs uses it as the User-Agent)
        base_url: API root
        timeout: Per-request timeout in seconds
        transport: Optional transport override (tests use httpx.MockTransport)

    Returns:
        Configured AsyncClient
    """
    headers = DEFAULT_HEADERS.copy()
    headers["User-Agent"] = user_agent
    headers["Authorization-Key"] = api_key

    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers,
        timeout=timeout,
        follow_redirects=True,
        transport=transport,
    )


# ========== Payload parsing ==========


def parse_salary(value: Any) -> int:
    """Parse "$85,000.00"-style amounts; anything unparsable is 0 (unknown)."""
    if value is None:
        return 0
    text = str(value).replace("$", "").replace(",", "").strip()
    try:
        return max(int(float(text)), 0)
    except ValueError:
        return 0


def parse_api_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the API; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparsable API timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _join_lines(values: Any) -> str | None:
    if not isinstance(values, list):
        return None
    lines = [str(v).strip() for v in values if v and str(v).strip()]
    return "\n".join(lines) if lines else None


def parse_job_descriptor(descriptor: dict) -> JobRecord:
    """Map a MatchedObjectDescriptor onto a JobRecord

    Args:
        descriptor: The ``MatchedObjectDescriptor`` object of a search item

    Returns:
        JobRecord (cached_at left unset, the store stamps it)

    Raises:
        FatalError: If the descriptor is not an object or has no PositionID
    """
    if not isinstance(descriptor, dict):
        raise FatalError(f"Job descriptor is not an object: {type(descriptor).__name__}")

    job_id = descriptor.get("PositionID")
    if not job_id:
        raise FatalError("Job descriptor is missing PositionID")
    job_id = str(job_id)

    remuneration = descriptor.get("PositionRemuneration")
    first_pay = remuneration[0] if isinstance(remuneration, list) and remuneration else {}
    if not isinstance(first_pay, dict):
        first_pay = {}

    grades = descriptor.get("JobGrade")
    grade = None
    if isinstance(grades, list) and grades and isinstance(grades[0], dict):
        grade = grades[0].get("Code")

    apply_uris = descriptor.get("ApplyURI")
    if isinstance(apply_uris, list) and apply_uris:
        application_url = str(apply_uris[0])
    else:
        application_url = JOB_PAGE_URL.format(job_id=job_id)

    details = (descriptor.get("UserArea") or {}).get("Details") or {}

    organization = descriptor.get("OrganizationName")

    return JobRecord(
        job_id=job_id,
        title=descriptor.get("PositionTitle") or "Untitled Position",
        department=descriptor.get("DepartmentName") or organization,
        location=descriptor.get("PositionLocationDisplay") or "Location not specified",
        salary_min=parse_salary(first_pay.get("MinimumRange")),
        salary_max=parse_salary(first_pay.get("MaximumRange")),
        date_posted=parse_api_datetime(descriptor.get("PublicationStartDate")),
        application_deadline=parse_api_datetime(descriptor.get("ApplicationCloseDate")),
        is_remote_eligible=bool(details.get("RemoteIndicator") or details.get("TeleworkEligible")),
        grade=grade,
        application_url=application_url,
        summary=details.get("JobSummary") or descriptor.get("PositionSummary") or None,
        requirements=_join_lines(details.get("KeyRequirements")),
        major_duties=_join_lines(details.get("MajorDuties")),
    )


def parse_search_response(payload: Any, criteria: SearchCriteria) -> SearchResponse:
    """Turn a search payload into a SearchResponse

    Items whose descriptor cannot be mapped are skipped and logged; a payload
    without a SearchResult object is rejected.

    Raises:
        FatalError: If the payload does not have the expected structure
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("SearchResult"), dict):
        raise FatalError("Search response is missing SearchResult")

    result = payload["SearchResult"]
    items: list[JobRecord] = []
    for item in result.get("SearchResultItems") or []:
        try:
            items.append(parse_job_descriptor(item.get("MatchedObjectDescriptor")))
        except (FatalError, AttributeError, ValueError) as e:
            logger.warning(f"Skipping malformed search item: {e}")

    try:
        total = int(result.get("SearchResultCountAll", len(items)))
    except (TypeError, ValueError):
        total = len(items)

    return SearchResponse(
        total_count=total,
        page=criteria.page,
        page_size=criteria.results_per_page,
        items=items,
    )


def build_search_params(criteria: SearchCriteria) -> dict[str, str]:
    params: dict[str, str] = {}

    if criteria.keyword and criteria.keyword.strip():
        params["Keyword"] = criteria.keyword.strip()
    if criteria.location and criteria.location.strip():
        params["LocationName"] = criteria.location.strip()
    if criteria.department and criteria.department.strip():
        params["Organization"] = criteria.department.strip()
    if criteria.salary_min is not None:
        params["RemunerationMinimumAmount"] = str(criteria.salary_min)
    if criteria.salary_max is not None:
        params["RemunerationMaximumAmount"] = str(criteria.salary_max)
    if criteria.remote_only:
        params["RemoteIndicator"] = "True"

    params["Page"] = str(criteria.page)
    params["ResultsPerPage"] = str(criteria.results_per_page)
    params["Fields"] = "Full"
    return params


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_status(response: httpx.Response) -> None:
    """Map an HTTP status onto the error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise RateLimitError("USAJobs rate limit exceeded", retry_after=_parse_retry_after(response))
    if status in (401, 403):
        raise FatalError(f"USAJobs rejected the credentials (HTTP {status})", status_code=status)
    if status >= 500:
        raise TransientError(f"USAJobs server error (HTTP {status})", status_code=status)
    raise FatalError(f"Unexpected USAJobs response (HTTP {status})", status_code=status)


class USAJobsClient:
    """Stateless request/response boundary to the USAJobs API.

    Every call is independent and safe to retry. Transient failures are
    retried with exponential backoff inside a call; rate limiting is raised
    immediately.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ):
        self.http = http
        self.max_retries = max(max_retries, 1)
        self.base_delay = base_delay

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _get_json(self, params: dict[str, str], retries: int | None = None) -> Any:
        """GET the search endpoint with retry on transient failures

        Args:
            params: Query parameters
            retries: Attempts for this call, defaults to max_retries

        Raises:
            RateLimitError: On HTTP 429 (not retried)
            TransientError: After max_retries timeouts/5xx/connection errors
            FatalError: On auth failures, other 4xx, or undecodable JSON
        """
        attempts = self.max_retries if retries is None else max(retries, 1)
        for attempt in range(attempts):
            try:
                try:
                    response = await self.http.get(SEARCH_PATH, params=params)
                except httpx.TimeoutException as e:
                    raise TransientError(f"USAJobs request timed out: {e}") from e
                except httpx.RequestError as e:
                    raise TransientError(f"USAJobs request failed: {e}") from e

                raise_for_status(response)

                try:
                    return response.json()
                except ValueError as e:
                    raise FatalError(f"USAJobs returned invalid JSON: {e}") from e

            except RateLimitError:
                raise
            except TransientError as e:
                if attempt < attempts - 1:
                    delay = self.base_delay * (2 ** attempt) * random.uniform(0.8, 1.2)
                    logger.warning(f"{e}, retrying after {delay:.1f}s...")
                    await asyncio.sleep(delay)
                    continue
                raise

        # Should not reach here
        raise TransientError(f"USAJobs request failed after {attempts} attempts")

    async def search(self, criteria: SearchCriteria) -> SearchResponse:
        """Fetch one page of search results

        Args:
            criteria: Filters and paging

        Returns:
            SearchResponse with the total count and the current page's items
        """
        logger.info(f"Searching USAJobs: {criteria.model_dump(exclude_defaults=True)}")
        payload = await self._get_json(build_search_params(criteria))
        response = parse_search_response(payload, criteria)
        logger.info(f"Search returned {len(response.items)} of {response.total_count} jobs")
        return response

    async def get_details(self, job_id: str, retries: int | None = None) -> JobRecord:
        """Fetch full details for one job

        Args:
            job_id: USAJobs position ID
            retries: Attempts for this call; background sync passes 1 and lets
                the next cycle retry

        Raises:
            NotFoundError: If the API has no job with this ID
        """
        params = {"PositionID": job_id, "ResultsPerPage": "1", "Fields": "Full"}
        try:
            payload = await self._get_json(params, retries=retries)
        except FatalError as e:
            if e.status_code == 404:
                raise NotFoundError(job_id) from e
            raise

        response = parse_search_response(payload, SearchCriteria(results_per_page=1))
        if not response.items:
            raise NotFoundError(job_id)

        logger.debug(f"Fetched details for job {job_id}")
        return response.items[0]
