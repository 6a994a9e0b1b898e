"""
Task queue, message locks and the worker loop
"""
