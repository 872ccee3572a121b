"""
PnL subgraph client

Fetches conditions from The Graph using keyset pagination over
(creationTimestamp asc, id asc). Offset pagination is not safe here because
the upstream dataset keeps growing while we page through it.
"""
import json
import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from config import Config
from models.sync import SubgraphCondition, SyncCursor
from utils.logger import get_logger, log_api_call

logger = get_logger(__name__)

PNL_PAGE_SIZE = 200


class SubgraphError(Exception):
    """Transport or GraphQL failure while querying the subgraph"""


def build_conditions_query(after: Optional[SyncCursor], page_size: int = PNL_PAGE_SIZE) -> str:
    """
    Build the GraphQL query for one page of conditions after `after`

    With a cursor the filter is
    (creationTimestamp > ts) OR (creationTimestamp = ts AND id > cursor_id).
    """
    where_clause = ""
    if after is not None:
        timestamp_literal = json.dumps(str(after.creation_timestamp))
        condition_id_literal = json.dumps(after.condition_id)
        where_clause = (
            f", where: {{ or: [{{ creationTimestamp_gt: {timestamp_literal} }}, "
            f"{{ creationTimestamp: {timestamp_literal}, id_gt: {condition_id_literal} }}] }}"
        )

    return f"""
    {{
      conditions(
        first: {page_size},
        orderBy: creationTimestamp,
        orderDirection: asc{where_clause}
      ) {{
        id
        oracle
        questionId
        resolved
        arweaveHash
        creator
        owner
        creationTimestamp
      }}
    }}
    """


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "record"
    return f"{location}: {first.get('msg')}"


def normalize_condition(raw: Dict[str, Any]) -> SubgraphCondition:
    """
    `owner` overrides `creator` when present; the result is lower-cased

    A record that fails validation still comes back, carrying only its id,
    its timestamp and `validation_error`, so the sync can account for it
    in page order instead of losing the whole page.
    """
    if not isinstance(raw, dict):
        raw = {"id": None}
    owner = raw.get("owner") or raw.get("creator")
    normalized = dict(raw)
    normalized.pop("validation_error", None)
    normalized["creator"] = owner.lower() if isinstance(owner, str) else owner
    try:
        return SubgraphCondition.model_validate(normalized)
    except ValidationError as e:
        condition_id = raw.get("id")
        logger.warning(f"⚠️ Malformed subgraph condition {condition_id!r}: {_describe_validation_error(e)}")
        return SubgraphCondition.model_construct(
            id=condition_id if isinstance(condition_id, str) else "",
            creation_timestamp=raw.get("creationTimestamp"),
            validation_error=_describe_validation_error(e),
        )


class SubgraphClient:
    """Async client for the PnL subgraph"""

    def __init__(
        self,
        url: Optional[str] = None,
        page_size: int = PNL_PAGE_SIZE,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.url = url or Config.PNL_SUBGRAPH_URL
        self.page_size = page_size
        self._client = http_client
        self._timeout = timeout or Config.HTTP_TIMEOUT_SECONDS

    async def fetch_conditions_page(self, after: Optional[SyncCursor]) -> List[SubgraphCondition]:
        """Fetch one page of conditions strictly after the cursor"""
        if not self.url:
            raise SubgraphError("PNL_SUBGRAPH_URL is not configured")

        query = build_conditions_query(after, self.page_size)
        start_time = time.time()

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json={"query": query})
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.url, json={"query": query})
        except httpx.HTTPError as e:
            raise SubgraphError(f"PnL subgraph request failed: {e}") from e

        log_api_call(logger, "POST", self.url, response.status_code, (time.time() - start_time) * 1000)

        if response.status_code >= 400:
            raise SubgraphError(f"PnL subgraph request failed: {response.reason_phrase}")

        try:
            result = response.json()
        except ValueError as e:
            raise SubgraphError(f"PnL subgraph returned invalid JSON: {e}") from e

        if result.get("errors"):
            raise SubgraphError(f"PnL subgraph query error: {result['errors'][0].get('message')}")

        raw_conditions = (result.get("data") or {}).get("conditions") or []
        return [normalize_condition(raw) for raw in raw_conditions]
