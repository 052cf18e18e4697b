"""Church SMS inbox service: inbound attribution, unread counters and provider sync."""
