"""
Inbound email rules pipeline
"""
