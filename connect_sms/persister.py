"""
Writes messages into the global collection and the tenant scoped copies.

The global write must succeed; every tenant or member copy after it is
best effort and is logged and skipped on failure without undoing the
global document.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from connect_sms.collections import (
    GLOBAL_MESSAGES,
    church_messages,
    church_visitor_messages,
    member_messages,
)
from connect_sms.models import Message, utcnow
from connect_sms.resolver import Attribution
from connect_sms.sms_provider import ProviderMessage
from connect_sms.storage import create_message, find_existing_sids, get_message_by_id

logger = logging.getLogger(__name__)


class DuplicateMessage(Exception):
    """The global collection already holds a message with this twilio_sid."""

    def __init__(self, twilio_sid: str):
        super().__init__(f"duplicate twilio_sid {twilio_sid}")
        self.twilio_sid = twilio_sid


@dataclass
class InboundSms:
    """A normalized inbound SMS as delivered by the provider webhook."""
    from_phone: str
    to_phone: Optional[str]
    body: str
    twilio_sid: Optional[str] = None


@dataclass
class PersistResult:
    message: Message
    copies: List[str] = field(default_factory=list)
    failed_copies: List[str] = field(default_factory=list)


def inbound_collections(attribution: Attribution) -> List[str]:
    """Tenant and member collections an attributed inbound message is copied into."""
    if not attribution.church_id:
        return []
    if attribution.member_id:
        return [church_messages(attribution.church_id), member_messages(attribution.member_id)]
    if attribution.visitor_id:
        return [church_visitor_messages(attribution.church_id)]
    return [church_messages(attribution.church_id)]


def _inbound_fields(sms: InboundSms, attribution: Attribution) -> dict:
    now = utcnow()
    fields = {
        "from_phone": sms.from_phone,
        "to_phone": sms.to_phone,
        "body": sms.body,
        "message": sms.body,
        "direction": "inbound",
        "status": "received",
        "sent_at": now,
        "timestamp": now,
        "twilio_sid": sms.twilio_sid,
        "is_read": False,
    }
    if attribution.church_id:
        fields["church_id"] = attribution.church_id
    if attribution.member_id:
        fields["member_id"] = attribution.member_id
        fields["sender_id"] = attribution.member_id
    elif attribution.visitor_id:
        fields["visitor_id"] = attribution.visitor_id
        fields["sender_id"] = attribution.visitor_id
    return fields


def _write_copy(db: Session, collection: str, fields: dict) -> bool:
    try:
        create_message(db, collection, **fields)
        return True
    except Exception as e:
        logger.error(f"Failed to store message copy in {collection}: {e}")
        return False


def persist_inbound(db: Session, sms: InboundSms, attribution: Attribution) -> PersistResult:
    """
    Store an inbound SMS globally, then copy it into its tenant collections.

    Raises:
        DuplicateMessage: the provider redelivered a message already stored.
        Exception: the global write failed for any other reason.
    """
    fields = _inbound_fields(sms, attribution)

    try:
        stored = create_message(db, GLOBAL_MESSAGES, **fields)
    except IntegrityError:
        if sms.twilio_sid and find_existing_sids(db, GLOBAL_MESSAGES, [sms.twilio_sid]):
            raise DuplicateMessage(sms.twilio_sid)
        raise
    logger.info(f"Stored inbound message in {GLOBAL_MESSAGES} with ID: {stored.id}")

    result = PersistResult(message=stored)
    if not attribution.attributed:
        logger.info("Could not determine church for this message. Stored in general collection only.")
        return result

    for collection in inbound_collections(attribution):
        if _write_copy(db, collection, fields):
            result.copies.append(collection)
        else:
            result.failed_copies.append(collection)
    return result


def persist_synced(
    db: Session,
    messages: Iterable[ProviderMessage],
    phone: str,
    church_id: str,
    member_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
    source: Optional[str] = None,
) -> int:
    """
    Store provider messages not yet present in the global collection.

    Every unseen message and its tenant copy are committed together in one
    transaction. Messages are inbound when sent from ``phone``. When both a
    visitor and a member are given the visitor wins. If an overlapping sync
    commits some of the same sids first, the batch is filtered again and
    only what is still missing is stored.

    Returns:
        Number of new messages stored
    """
    if visitor_id:
        member_id = None

    unique = list({m.sid: m for m in messages if m.sid}.values())

    if visitor_id:
        copy_collection = church_visitor_messages(church_id)
    elif member_id:
        copy_collection = church_messages(church_id)
    else:
        copy_collection = None

    def store_unseen() -> int:
        existing = find_existing_sids(db, GLOBAL_MESSAGES, [m.sid for m in unique])
        new_count = 0
        for provider_message in unique:
            if provider_message.sid in existing:
                continue
            fields = _synced_fields(provider_message, phone, church_id, member_id, visitor_id, source)
            db.add(Message(collection=GLOBAL_MESSAGES, **fields))
            if copy_collection:
                db.add(Message(collection=copy_collection, **fields))
            new_count += 1

        if new_count:
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
        return new_count

    try:
        new_count = store_unseen()
    except IntegrityError:
        logger.info(f"Concurrent sync stored messages for {phone} first, retrying with the remainder")
        new_count = store_unseen()

    if new_count:
        logger.info(f"Added {new_count} new messages to database")
    return new_count


def _synced_fields(
    provider_message: ProviderMessage,
    phone: str,
    church_id: str,
    member_id: Optional[str],
    visitor_id: Optional[str],
    source: Optional[str],
) -> dict:
    inbound = provider_message.from_ == phone
    sent = _as_datetime(provider_message.date_sent)
    fields = {
        "from_phone": provider_message.from_,
        "to_phone": provider_message.to,
        "body": provider_message.body,
        "message": provider_message.body,
        "twilio_sid": provider_message.sid,
        "twilio_message_id": provider_message.sid,
        "direction": "inbound" if inbound else "outbound",
        "status": provider_message.status,
        "sent_at": sent,
        "timestamp": sent,
        "church_id": church_id,
        "member_id": member_id,
        "visitor_id": visitor_id,
        "source": source,
        "is_read": not inbound,
    }
    identity = visitor_id or member_id
    if identity:
        fields["sender_id"] = identity if inbound else "admin"
    return fields


def _as_datetime(value: Optional[datetime]) -> datetime:
    return value if value is not None else utcnow()


def persist_outbound(
    db: Session,
    to: str,
    text: str,
    twilio_sid: str,
    church_id: str,
    from_phone: Optional[str] = None,
    sender_id: Optional[str] = None,
    member_id: Optional[str] = None,
    member_name: Optional[str] = None,
    visitor_id: Optional[str] = None,
    visitor_name: Optional[str] = None,
    message_id: Optional[str] = None,
    client_message_id: Optional[str] = None,
) -> PersistResult:
    """
    Record an SMS the church sent.

    The global document is written first and must succeed. The tenant copy
    goes to visitorMessages for visitors and to the church messages
    collection otherwise; when ``message_id`` names an existing tenant
    document (typically an optimistic placeholder from the UI) it is updated
    in place, else it is created under that id.
    """
    if visitor_id:
        member_id = None

    now = utcnow()
    fields = {
        "from_phone": from_phone,
        "to_phone": to,
        "body": text,
        "message": text,
        "sent_at": now,
        "timestamp": now,
        "sent_by": sender_id,
        "sender_id": sender_id,
        "status": "sent",
        "twilio_sid": twilio_sid,
        "twilio_message_id": twilio_sid,
        "direction": "outbound",
        "church_id": church_id,
        "is_read": True,
    }

    stored = create_message(
        db,
        GLOBAL_MESSAGES,
        member_id=member_id,
        visitor_id=visitor_id,
        member_name=member_name,
        visitor_name=visitor_name,
        client_message_id=client_message_id,
        **fields,
    )
    result = PersistResult(message=stored)

    if visitor_id:
        collection = church_visitor_messages(church_id)
        copy_fields = dict(
            fields,
            visitor_id=visitor_id,
            visitor_name=visitor_name or "Visitor",
            sender_name=member_name or "Church Admin",
        )
    else:
        collection = church_messages(church_id)
        copy_fields = dict(fields, member_id=member_id, member_name=member_name or "Member")

    if _upsert_copy(db, collection, message_id, copy_fields):
        result.copies.append(collection)
    else:
        result.failed_copies.append(collection)
    return result


def _upsert_copy(db: Session, collection: str, message_id: Optional[str], fields: dict) -> bool:
    if not message_id:
        return _write_copy(db, collection, fields)

    try:
        existing = get_message_by_id(db, collection, message_id)
        if existing is None:
            create_message(db, collection, id=message_id, **fields)
        else:
            for name, value in fields.items():
                setattr(existing, name, value)
            db.commit()
            logger.info(f"Updated message {collection}/{message_id}")
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to upsert message {collection}/{message_id}: {e}")
        return False
