"""Ambient cache.

Caching and rate-limited fetch layer for the home dashboard backend. Serves
third-party API payloads (weather, flights, stocks, space events) from a
persistent cache, refreshes stale entries in the background, and throttles
upstream calls per provider with retry-after aware backoff.
"""

__version__ = "0.1.0"
