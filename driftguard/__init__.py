"""
DriftGuard
----------
Configuration drift monitoring, security alerting and a tamper-evident audit
ledger for operational environments.
"""

__version__ = "0.1.0"
