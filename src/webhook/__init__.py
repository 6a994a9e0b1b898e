"""
Inbound change reconciliation
"""
from .history import HistoryReconciler, Notification

__all__ = ['HistoryReconciler', 'Notification']
