"""
Pulse ingestion service
=======================

Pulls Kenyan news from RSS/Atom feeds on a schedule, falls back to a
quota-limited search API when the feeds run dry, filters duplicates,
enriches and stores each new article, and records every run for the
health and dashboard endpoints.
"""

__version__ = "0.1.0"
