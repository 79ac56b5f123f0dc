"""Checkout reservation and pricing engine."""
