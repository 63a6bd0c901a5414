"""
Client for triggering a selection cycle on a running inventory service.
"""

import logging

import httpx

logger = logging.getLogger(__name__)

TRIGGER_PATH = "/-/coffee-beans/botd/trigger"


class TriggerError(Exception):
    """The remote service could not run the selection cycle."""


def trigger_url(base_url: str) -> str:
    """Build the trigger endpoint URL from a service base URL or full URL."""
    base_url = base_url.rstrip("/")
    if base_url.endswith(TRIGGER_PATH):
        return base_url
    return f"{base_url}{TRIGGER_PATH}"


async def trigger_remote(
    base_url: str,
    username: str,
    password: str,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """
    POST to the service's trigger route with HTTP Basic credentials.

    Returns the decoded JSON response. Raises TriggerError on connection
    failures and non-2xx responses.
    """
    url = trigger_url(base_url)
    logger.info(f"Triggering Bean of the Day selection at {url}")

    async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
        try:
            response = await client.post(url, auth=(username, password))
        except httpx.RequestError as e:
            raise TriggerError(f"Unable to reach {url}: {e}") from e

    if response.status_code == 401:
        raise TriggerError("Authentication failed")

    if response.status_code >= 400:
        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise TriggerError(f"Trigger failed with HTTP {response.status_code}: {message}")

    return response.json()
