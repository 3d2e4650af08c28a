from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)
import httpx

# Retry decorator for subgraph calls. Only connection-level failures are
# retried; HTTP status and GraphQL errors surface on the first attempt.
def retry_on_network_error(attempts: int = 3):
    return retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True
    )
