"""Test suite for the referral routing service."""
