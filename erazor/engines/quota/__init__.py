"""
Quota Engine

Tier resolution, daily quotas, paid throttling and the credit gate.
"""
