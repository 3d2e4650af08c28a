"""
Sequential skip-based pagination over one event collection.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from lending_history.services.graphql_client import SubgraphClient
from lending_history.services.query_builder import SKIP_VARIABLE, BuiltQuery

logger = logging.getLogger(__name__)


async def paginate(
    client: SubgraphClient,
    endpoint: str,
    query_field: str,
    built_query: BuiltQuery,
    filter_params: Dict[str, Any],
    page_size: Optional[int] = None,
    max_events: Optional[int] = None,
    transform: Optional[Callable[[Dict[str, Any]], Any]] = None
) -> List[Any]:
    """
    Fetch raw records page by page until a short page or the event cap.

    Pages are requested strictly one after another; offsets are only
    meaningful against a stable, ordered result set.

    Args:
        client: GraphQL client used for every page
        endpoint: Subgraph URL
        query_field: Root field whose list is read from each response
        built_query: Query from build_query, with a $skip variable
        filter_params: $user / $from values
        page_size: Rows per page; must match the `first` literal in the query
        max_events: Stop once this many rows are collected (None = unbounded)
        transform: Applied to each row as it arrives; rows mapped to None are
            discarded and do not count towards max_events

    Returns:
        Records (or their transforms) in server order, at most max_events of them
    """
    page_size = page_size or built_query.page_size
    if max_events is not None and max_events <= 0:
        return []

    records: List[Any] = []
    skip = 0
    while True:
        data = await client.execute(endpoint, built_query.text, {**filter_params, SKIP_VARIABLE: skip})
        batch = data.get(query_field) or []

        for raw in batch:
            item = transform(raw) if transform is not None else raw
            if item is None:
                continue
            records.append(item)
            if max_events is not None and len(records) >= max_events:
                logger.info(f"Reached cap of {max_events} rows on {query_field}")
                return records

        if len(batch) < page_size:
            break
        skip += page_size

    logger.debug(f"Fetched {len(records)} rows from {query_field} in {skip // page_size + 1} page(s)")
    return records
