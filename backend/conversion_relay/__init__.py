"""Conversion event delivery to ad platforms.

Hashes lead PII, queues one delivery job per platform and pushes the
conversions to Meta CAPI and Google Ads offline conversions from arq workers.
"""

__version__ = "0.1.0"
