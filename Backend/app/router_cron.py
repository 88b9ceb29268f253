"""
Cron endpoints for scheduled jobs.

Called by an external scheduler (Vercel cron, GitHub Actions, systemd timer):

    GET /cron/reminders          hourly
    GET /cron/winback            daily
    GET /cron/rating-requests    hourly

When CRON_SECRET is set every call must send
``Authorization: Bearer <CRON_SECRET>``.
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.db import get_session
from .core.request_context import AuthenticationError
from .jobs import send_rating_requests, send_reminders, send_winback_emails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


async def verify_cron_secret(request: Request) -> None:
    secret = get_settings().cron_secret
    if not secret:
        return
    supplied = request.headers.get("Authorization", "")
    if not hmac.compare_digest(supplied, f"Bearer {secret}"):
        logger.warning(f"Rejected cron call to {request.url.path}")
        raise AuthenticationError("Invalid cron secret.", code="INVALID_TOKEN")


@router.get("/reminders", dependencies=[Depends(verify_cron_secret)])
async def cron_reminders(session: AsyncSession = Depends(get_session)):
    summary = await send_reminders(session)
    return {**summary.as_dict(), "results": summary.details}


@router.get("/winback", dependencies=[Depends(verify_cron_secret)])
async def cron_winback(session: AsyncSession = Depends(get_session)):
    summary = await send_winback_emails(session)
    return summary.as_dict()


@router.get("/rating-requests", dependencies=[Depends(verify_cron_secret)])
async def cron_rating_requests(session: AsyncSession = Depends(get_session)):
    summary = await send_rating_requests(session)
    return {**summary.as_dict(), "results": summary.details}
