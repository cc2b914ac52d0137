"""Paid service handling: payment gate, request queue and service handlers."""
