"""
bean-of-the-day: Daily featured coffee bean selection.

A background service that picks one coffee bean from the inventory as the
"Bean of the Day" every night at local midnight, plus the on-demand trigger
used by the inventory API.
"""

__version__ = "0.1.0"
