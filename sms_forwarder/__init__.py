"""
SMS Forwarder: telephony callback ingestion, message storage and fan-out relay.
"""

__version__ = "1.0.0"
