"""Alert service for sending dispatch notifications to Telegram.

`send_alert` blocks and is meant for sync code paths. Code running on the
event loop (dispatch, drain worker) uses `send_alert_async`.
"""

from typing import Optional

import httpx

from dispatch_api.config import get_settings
from dispatch_api.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_API_URL = "https://api.telegram.org"
ALERT_TIMEOUT_SECONDS = 10


def _build_request(level: str, message: str, context: Optional[dict]) -> Optional[tuple[str, dict]]:
    settings = get_settings()
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return None

    prefix = {"INFO": "[info]", "WARNING": "[warn]", "ERROR": "[error]", "CRITICAL": "[critical]"}
    text = f"{prefix.get(level, '[alert]')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    url = f"{TELEGRAM_API_URL}/bot{settings.alert_bot_token}/sendMessage"
    return url, {"chat_id": settings.alert_chat_id, "text": text, "parse_mode": "Markdown"}


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    request = _build_request(level, message, context)
    if request is None:
        return False
    url, payload = request

    try:
        with httpx.Client(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = client.post(url, json=payload)
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def send_alert_async(level: str, message: str, context: Optional[dict] = None) -> bool:
    request = _build_request(level, message, context)
    if request is None:
        return False
    url, payload = request

    try:
        async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=payload)
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def _run_failed_context(client_id: str, run_id: str, error: Optional[str]) -> dict:
    return {"client_id": client_id, "run_id": run_id, "error": error or "unknown"}


def alert_run_failed(client_id: str, run_id: str, error: Optional[str]) -> bool:
    return send_alert("ERROR", "Campaign run failed", _run_failed_context(client_id, run_id, error))


async def alert_run_failed_async(client_id: str, run_id: str, error: Optional[str]) -> bool:
    return await send_alert_async("ERROR", "Campaign run failed", _run_failed_context(client_id, run_id, error))


async def alert_drain_failed(error: str, context: Optional[dict] = None) -> bool:
    return await send_alert_async("CRITICAL", f"Outbox drain pass failed: {error}", context)
