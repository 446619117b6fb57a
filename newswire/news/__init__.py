"""
Per-article processing stages.

Modules:
- extractor (ContentExtractor): page body, images, Open-Graph, author, tags
- dedup (Deduplicator): content hash / canonical URL checks, slug allocation
- classifier (Classifier): script-scoped keyword scoring, dynamic category promotion
"""

from newswire.news.classifier import Classification, Classifier, load_keyword_table
from newswire.news.dedup import Deduplicator, slugify
from newswire.news.extractor import ContentExtractor, Extraction
