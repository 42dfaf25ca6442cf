import logging

import httpx

logger = logging.getLogger(__name__)


async def push_to_device(
    device_id: str,
    payload: dict,
    *,
    gateway_url: str | None,
    timeout: float = 5.0,
) -> None:
    """
    Deliver a notification payload to one device through the push gateway.
    Without a gateway the payload is only logged.
    """
    if not gateway_url:
        logger.info(
            "Push gateway not configured; would notify %s: %s",
            device_id,
            payload,
        )
        return

    url = f"{gateway_url.rstrip('/')}/devices/{device_id}/notifications"
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, json=payload)
        response.raise_for_status()
    logger.debug(
        "Pushed request %s to %s", payload.get("requestId"), device_id
    )
