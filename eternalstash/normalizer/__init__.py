"""Normalization of cache transitions into ImageUsageEvents.

Exports:
    EventNormalizer -- Turns observed-add/observed-delete signals into
                       canonical usage events and hands them to the recorder.
"""

from eternalstash.normalizer.usage_normalizer import EventNormalizer

__all__ = ["EventNormalizer"]
