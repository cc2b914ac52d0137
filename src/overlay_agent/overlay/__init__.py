"""Overlay publishing: anchor transactions, registration and discovery."""
