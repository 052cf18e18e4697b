"""
Re-import a phone number's message history from the SMS provider.
"""

import asyncio
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from connect_sms.metrics import record_sync_result
from connect_sms.persister import persist_synced
from connect_sms.sms_provider import HISTORY_PAGE_SIZE, ProviderMessage, TwilioSmsProvider

logger = logging.getLogger(__name__)


def unique_by_sid(*batches: Iterable[ProviderMessage]) -> List[ProviderMessage]:
    """Merge provider batches keeping the first occurrence of each sid."""
    seen = set()
    unique = []
    for batch in batches:
        for message in batch:
            if message.sid in seen:
                continue
            seen.add(message.sid)
            unique.append(message)
    return unique


def fetch_history(provider: TwilioSmsProvider, phone: str) -> List[ProviderMessage]:
    """Messages sent to, then from, ``phone``; one provider call after the other."""
    to_phone = provider.list_messages(to=phone, limit=HISTORY_PAGE_SIZE)
    from_phone = provider.list_messages(from_=phone, limit=HISTORY_PAGE_SIZE)
    return unique_by_sid(to_phone, from_phone)


async def fetch_history_concurrently(provider: TwilioSmsProvider, phone: str) -> List[ProviderMessage]:
    """Same as fetch_history, with both provider calls in flight at once."""
    to_phone, from_phone = await asyncio.gather(
        run_in_threadpool(provider.list_messages, to=phone, limit=HISTORY_PAGE_SIZE),
        run_in_threadpool(provider.list_messages, from_=phone, limit=HISTORY_PAGE_SIZE),
    )
    return unique_by_sid(to_phone, from_phone)


def store_history(
    db: Session,
    endpoint: str,
    messages: List[ProviderMessage],
    phone: str,
    church_id: str,
    member_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
    source: Optional[str] = None,
) -> int:
    """Persist the messages not stored yet and record the sync in metrics."""
    logger.info(f"Found {len(messages)} messages for {phone}")
    new_count = persist_synced(
        db,
        messages,
        phone=phone,
        church_id=church_id,
        member_id=member_id,
        visitor_id=visitor_id,
        source=source,
    )
    record_sync_result(endpoint, fetched=len(messages), stored=new_count)
    return new_count
