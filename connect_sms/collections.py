"""Collection paths for messages and unread counter documents.

Messages are written to a global collection and copied into tenant and
member scoped collections. Build every path through these helpers so the
layout stays in one place:

    messages
    churches/{church_id}/messages
    churches/{church_id}/visitorMessages
    churches/{church_id}/adminConnect/members
    churches/{church_id}/adminConnect/visitors
    users/{member_id}/messages
"""

GLOBAL_MESSAGES = "messages"

AUDIENCE_MEMBERS = "members"
AUDIENCE_VISITORS = "visitors"


def church_messages(church_id: str) -> str:
    return f"churches/{church_id}/messages"


def church_visitor_messages(church_id: str) -> str:
    return f"churches/{church_id}/visitorMessages"


def member_messages(member_id: str) -> str:
    return f"users/{member_id}/messages"


def unread_counter_path(church_id: str, audience: str) -> str:
    return f"churches/{church_id}/adminConnect/{audience}"
