"""
Security alerting: lifecycle, correlation, escalation and notification.
"""
