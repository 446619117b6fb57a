"""
Newswire - news ingestion pipeline.

Pulls RSS/Atom feeds and NewsAPI-style endpoints, extracts article pages,
deduplicates, classifies (multilingual keywords + dynamic categories) and
stores articles through SQLAlchemy.
"""

__version__ = "1.0.0"
