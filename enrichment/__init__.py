"""
Profile enrichment and fact-verification pipeline.

Turns an identity seed (email, social URLs) into a provenance-tagged
profile where every field carries a confidence score and the URLs that
support it.
"""

__version__ = "0.1.0"
