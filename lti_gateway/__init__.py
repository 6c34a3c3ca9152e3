"""LTI 1.3 launch gateway with a monthly usage ledger.

Authenticates students arriving from the LMS, derives an anonymous
identity, and meters chat messages and speaking seconds per calendar month.
"""
