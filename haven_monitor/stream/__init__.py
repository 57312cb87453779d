"""
Live view of the relay's record streams.

The multiplexer holds one websocket per endpoint and feeds a single aggregator,
which deduplicates records, extracts media and publishes throttled change batches.
"""
from .aggregator import EventAggregator
from .models import ChangeBatch, MediaReference, Record, Subscription
from .multiplexer import SubscriptionMultiplexer

__all__ = [
    "EventAggregator", "SubscriptionMultiplexer",
    "ChangeBatch", "MediaReference", "Record", "Subscription",
]
