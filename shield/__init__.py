"""Abuse protection: distributed rate limiting and brute-force defense."""
