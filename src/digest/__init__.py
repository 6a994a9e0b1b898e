"""
Digest scheduling and delivery
"""
