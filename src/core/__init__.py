"""Core domain package for cityscope.

Core contains ingestion, geocoding orchestration, GeoJSON assembly and
geo-matching logic without any HTTP, Telegram or storage-specific code,
keeping the business logic portable.
"""
