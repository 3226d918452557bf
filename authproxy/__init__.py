"""authproxy: API-key admission proxy in front of a single internal upstream."""

__version__ = "0.1.0"
