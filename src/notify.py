"""Webhook notification for terminal operation status."""

import asyncio
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


def build_payload(op_id: str, status: str, error: Optional[str] = None) -> dict:
    payload = {'id': op_id, 'status': status}
    if error:
        payload['error'] = error
    return payload


def post_callback(url: str, payload: dict, timeout: float = 10) -> bool:
    """POST the payload. Failures are logged, never raised."""
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
    except requests.exceptions.RequestException as e:
        logger.warning(f"Callback notification to {url} failed: {e}")
        return False
    if resp.status_code >= 400:
        logger.warning(f"Callback notification to {url} returned HTTP {resp.status_code}")
        return False
    logger.debug(f"Notified {url}: {payload}")
    return True


async def notify_callback(url: str, op_id: str, status: str, error: Optional[str] = None,
                          timeout: float = 10) -> bool:
    return await asyncio.to_thread(post_callback, url, build_payload(op_id, status, error), timeout)
