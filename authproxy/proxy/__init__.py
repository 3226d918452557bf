"""Admission and forwarding of proxied requests."""
