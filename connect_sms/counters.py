"""
Unread counter maps shown as badges in the admin inbox.

Each church has one counter document per audience. Member entries are
bumped by one per inbound message; visitor entries are recounted from the
unread visitor messages. Both updates are a read-modify-write on the
counter row inside a single transaction, so concurrent inbound messages for
the same church serialize on that row.
"""

import logging
from typing import Dict, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from connect_sms.collections import (
    AUDIENCE_MEMBERS,
    AUDIENCE_VISITORS,
    GLOBAL_MESSAGES,
    church_messages,
    church_visitor_messages,
    member_messages,
    unread_counter_path,
)
from connect_sms.models import Message, UnreadCounter

logger = logging.getLogger(__name__)

# Dialects with INSERT ... ON CONFLICT DO NOTHING
_UPSERT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def _ensure_counter_row(db: Session, church_id: str, audience: str) -> None:
    """Create the empty counter document if missing, without racing other creators."""
    insert = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
    if insert is None:
        return
    db.execute(
        insert(UnreadCounter)
        .values(church_id=church_id, audience=audience, counts={})
        .on_conflict_do_nothing(index_elements=["church_id", "audience"])
    )


def _write_entry(db: Session, church_id: str, audience: str, identity_id: str, update) -> int:
    """
    Transactionally apply ``update(current) -> new`` to one counter entry.

    The counter document is created when missing, then locked for the rest
    of the transaction. Returns the stored value.
    """
    try:
        _ensure_counter_row(db, church_id, audience)
        counter = (
            db.query(UnreadCounter)
            .filter(UnreadCounter.church_id == church_id, UnreadCounter.audience == audience)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        counts: Dict[str, int] = dict(counter.counts or {}) if counter is not None else {}

        value = max(0, int(update(counts.get(identity_id, 0))))
        counts[identity_id] = value

        if counter is None:
            db.add(UnreadCounter(church_id=church_id, audience=audience, counts=counts))
        else:
            # Reassign so the JSON column is flagged dirty
            counter.counts = counts
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.debug(f"{unread_counter_path(church_id, audience)}[{identity_id}] = {value}")
    return value


def increment_member_unread(db: Session, church_id: str, member_id: str) -> int:
    """Add one to the member's entry in churches/{id}/adminConnect/members."""
    value = _write_entry(db, church_id, AUDIENCE_MEMBERS, member_id, lambda current: current + 1)
    logger.info(f"Updated unread counter for member {member_id} to {value}")
    return value


def reset_member_unread(db: Session, church_id: str, member_id: str) -> int:
    return _write_entry(db, church_id, AUDIENCE_MEMBERS, member_id, lambda current: 0)


def count_unread_visitor_messages(db: Session, church_id: str, visitor_id: str) -> int:
    return (
        db.query(func.count(Message.id))
        .filter(
            Message.collection == church_visitor_messages(church_id),
            Message.visitor_id == visitor_id,
            Message.is_read.is_(False),
        )
        .scalar()
        or 0
    )


def recompute_visitor_unread(db: Session, church_id: str, visitor_id: str) -> int:
    """
    Overwrite the visitor's entry in churches/{id}/adminConnect/visitors with
    the number of unread messages in the church's visitorMessages collection.
    """
    unread = count_unread_visitor_messages(db, church_id, visitor_id)
    value = _write_entry(db, church_id, AUDIENCE_VISITORS, visitor_id, lambda current: unread)
    logger.info(f"Updated unread counter for visitor {visitor_id} to {value}")
    return value


def get_unread_counts(db: Session, church_id: str) -> Dict[str, Dict[str, int]]:
    """Both counter maps of a church; missing documents read as empty maps."""
    rows = db.query(UnreadCounter).filter(UnreadCounter.church_id == church_id).all()
    counts = {AUDIENCE_MEMBERS: {}, AUDIENCE_VISITORS: {}}
    for row in rows:
        counts[row.audience] = dict(row.counts or {})
    return counts


def mark_conversation_read(
    db: Session,
    church_id: str,
    member_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
    reader_id: Optional[str] = None,
) -> Tuple[int, int]:
    """
    Mark every unread message of one member or visitor in a church as read
    and bring their counter entry back in line.

    The church collection, the global collection and, for members, the
    member's own collection are updated together. Messages whose sender is
    ``reader_id`` are left alone.

    Returns:
        Tuple of (messages marked read in the church collection, new unread count)
    """
    if member_id:
        church_collection = church_messages(church_id)
        collections = [church_collection, GLOBAL_MESSAGES, member_messages(member_id)]
        identity_filter = Message.member_id == member_id
    else:
        church_collection = church_visitor_messages(church_id)
        collections = [church_collection, GLOBAL_MESSAGES]
        identity_filter = Message.visitor_id == visitor_id

    updated = 0
    try:
        for collection in collections:
            query = db.query(Message).filter(
                Message.collection == collection,
                identity_filter,
                Message.is_read.is_(False),
            )
            if collection == GLOBAL_MESSAGES:
                query = query.filter(Message.church_id == church_id)
            if reader_id:
                query = query.filter(or_(Message.sender_id.is_(None), Message.sender_id != reader_id))

            count = query.update({Message.is_read: True}, synchronize_session=False)
            if collection == church_collection:
                updated = count
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Marked {updated} messages as read in {church_collection}")

    if member_id:
        unread = reset_member_unread(db, church_id, member_id)
    else:
        unread = recompute_visitor_unread(db, church_id, visitor_id)
    return updated, unread
