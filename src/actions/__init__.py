"""
Action execution for selected rules
"""
