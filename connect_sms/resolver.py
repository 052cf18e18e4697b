"""
Attribution of inbound messages to a church and a member or visitor.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from connect_sms.collections import GLOBAL_MESSAGES
from connect_sms.models import Church, Member, Message, Visitor
from connect_sms.phone import local_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attribution:
    """
    Result of identity resolution.

    source is one of "member", "visitor", "history" (inherited from the last
    message sent to the number) or "none".
    """
    church_id: Optional[str] = None
    member_id: Optional[str] = None
    visitor_id: Optional[str] = None
    source: str = "none"

    def __post_init__(self):
        if self.member_id and self.visitor_id:
            raise ValueError("attribution cannot name both a member and a visitor")

    @property
    def attributed(self) -> bool:
        return self.church_id is not None


UNATTRIBUTED = Attribution()


def resolve_identity(db: Session, normalized_phone: str) -> Attribution:
    """
    Find the church and member or visitor that owns ``normalized_phone``.

    Churches are scanned in creation order. Within a church a member match
    wins over a visitor match, and the first church with any match wins.
    When no church matches, the attribution of the most recent message sent
    to the number is inherited.
    """
    phone = local_phone(normalized_phone)

    churches = db.query(Church.id).order_by(Church.created_at.asc(), Church.id.asc()).all()
    logger.debug(f"Resolving {normalized_phone} across {len(churches)} churches")

    for (church_id,) in churches:
        member = (
            db.query(Member.id)
            .filter(Member.phone == phone, Member.church_id == church_id)
            .first()
        )
        if member is not None:
            logger.info(f"Found member: {member.id}, church: {church_id}")
            return Attribution(church_id=church_id, member_id=member.id, source="member")

        visitor = (
            db.query(Visitor.id)
            .filter(Visitor.church_id == church_id, Visitor.phone == phone)
            .first()
        )
        if visitor is not None:
            logger.info(f"Found visitor: {visitor.id}, church: {church_id}")
            return Attribution(church_id=church_id, visitor_id=visitor.id, source="visitor")

    previous = (
        db.query(Message)
        .filter(Message.collection == GLOBAL_MESSAGES, Message.to_phone == normalized_phone)
        .order_by(Message.timestamp.desc())
        .first()
    )
    if previous is not None and previous.church_id:
        logger.info(
            f"Matched response to previous message: church: {previous.church_id}, "
            f"member: {previous.member_id}, visitor: {previous.visitor_id}"
        )
        return Attribution(
            church_id=previous.church_id,
            member_id=previous.member_id,
            visitor_id=None if previous.member_id else previous.visitor_id,
            source="history",
        )

    logger.info(f"No church found for {normalized_phone}")
    return UNATTRIBUTED
