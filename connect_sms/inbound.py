"""
Inbound SMS pipeline: normalize the sender, attribute the message to a
church and member or visitor, persist it, then reconcile unread counters.

Only the global message write can fail the request. Attribution errors
degrade to an unattributed message; copy and counter errors are logged.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from connect_sms.collections import AUDIENCE_MEMBERS, AUDIENCE_VISITORS
from connect_sms.counters import increment_member_unread, recompute_visitor_unread
from connect_sms.metrics import record_counter_failure
from connect_sms.persister import DuplicateMessage, InboundSms, persist_inbound
from connect_sms.phone import normalize_phone
from connect_sms.resolver import UNATTRIBUTED, Attribution, resolve_identity

logger = logging.getLogger(__name__)


@dataclass
class InboundOutcome:
    """
    result: "member", "visitor", "church" (church known, identity not),
    "unattributed" or "duplicate".
    """
    result: str
    attribution: Attribution
    message_id: Optional[str] = None
    unread_count: Optional[int] = None


def _result_for(attribution: Attribution) -> str:
    if attribution.member_id:
        return "member"
    if attribution.visitor_id:
        return "visitor"
    if attribution.church_id:
        return "church"
    return "unattributed"


def reconcile_unread(db: Session, attribution: Attribution) -> Optional[int]:
    """Update the unread counter for the attributed identity, swallowing failures."""
    if not attribution.church_id:
        return None

    if attribution.member_id:
        try:
            return increment_member_unread(db, attribution.church_id, attribution.member_id)
        except Exception as e:
            logger.error(f"Error updating member unread counter: {e}")
            record_counter_failure(AUDIENCE_MEMBERS)
    elif attribution.visitor_id:
        try:
            return recompute_visitor_unread(db, attribution.church_id, attribution.visitor_id)
        except Exception as e:
            logger.error(f"Error updating visitor unread counter: {e}")
            record_counter_failure(AUDIENCE_VISITORS)
    return None


def process_inbound_sms(
    db: Session,
    from_phone: str,
    to_phone: Optional[str],
    body: str,
    twilio_sid: Optional[str] = None,
) -> InboundOutcome:
    """
    Run one inbound SMS through the pipeline.

    Raises:
        Exception: the global message write failed.
    """
    sender = normalize_phone(from_phone)
    logger.info(f"Received SMS response from {sender}, sid={twilio_sid}")

    try:
        attribution = resolve_identity(db, sender)
    except Exception as e:
        db.rollback()
        logger.error(f"Identity resolution failed for {sender}: {e}")
        attribution = UNATTRIBUTED

    sms = InboundSms(from_phone=sender, to_phone=to_phone, body=body, twilio_sid=twilio_sid)
    try:
        stored = persist_inbound(db, sms, attribution)
    except DuplicateMessage:
        logger.info(f"Duplicate delivery of {twilio_sid}, already stored")
        return InboundOutcome(result="duplicate", attribution=attribution)

    unread = reconcile_unread(db, attribution)

    return InboundOutcome(
        result=_result_for(attribution),
        attribution=attribution,
        message_id=stored.message.id,
        unread_count=unread,
    )
