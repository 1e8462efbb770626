"""
Tamper-evident audit ledger.
"""
