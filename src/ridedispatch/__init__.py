"""Ride dispatch core: matching, settlement, lifecycle and fares."""

__version__ = "0.1.0"
