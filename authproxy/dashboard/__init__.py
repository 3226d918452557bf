"""Dashboard JSON API."""
