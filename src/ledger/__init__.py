"""
Execution ledger and draft cleanup
"""
