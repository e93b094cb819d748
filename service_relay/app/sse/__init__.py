"""
Server-Sent Events sessions: one streaming connection bound to one topic.
"""
