"""Billing domain services."""
