"""
AI completion boundary
"""
from .client import CompletionClient, CompletionResult, Ok, SchemaInvalid, UpstreamError

__all__ = ['CompletionClient', 'CompletionResult', 'Ok', 'SchemaInvalid', 'UpstreamError']
