"""Realtime update fanout (in-process hub plus Redis relay)."""
