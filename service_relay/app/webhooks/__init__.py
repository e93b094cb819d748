"""
Inbound Plain webhook handling.
"""
