"""
HTTP client for communicating with the Users service.

The Orders service only needs one thing from it: a customer's default
delivery address, used when an order request does not name one.
"""
import logging
import os
import httpx
from typing import Optional

logger = logging.getLogger(__name__)

USERS_SERVICE_URL = os.getenv("USERS_SERVICE_URL", "http://users:8000")
TIMEOUT = 5.0  # seconds


async def get_user(user_id: int, token: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[dict]:
    """
    Retrieve user data from the Users service.

    Args:
        user_id: The ID of the user to retrieve
        token: Optional JWT token to authorize the inter-service request
        transport: Optional httpx transport (tests)

    Returns:
        User data as a dictionary if found, None otherwise

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    headers = {"Authorization": f"Bearer {token}"} if token else None
    async with httpx.AsyncClient(base_url=USERS_SERVICE_URL, timeout=TIMEOUT, transport=transport) as client:
        response = await client.get(f"/{user_id}", headers=headers)
        if response.status_code == 200:
            return response.json()
        return None


async def get_default_address(user_id: int, token: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[str]:
    """
    Look up a user's default delivery address.

    Returns:
        The address, or None if the user has none or the Users service
        could not be reached
    """
    try:
        user = await get_user(user_id, token, transport=transport)
    except httpx.HTTPError as e:
        logger.error(f"Users service lookup for user {user_id} failed: {e}")
        return None
    if not user:
        return None
    return user.get("delivery_address") or user.get("deliveryAddress")
