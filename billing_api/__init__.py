"""Broker billing API: invoice validation and lifecycle engine."""
