"""
HTTP API for driving concierge sessions.
"""
