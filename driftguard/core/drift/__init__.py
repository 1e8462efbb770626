"""
Drift detection: snapshot capture, comparison and risk scoring.
"""
