"""Referral ticket routing and lifecycle service."""
