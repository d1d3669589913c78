"""Aircon scheduler: drive room climate units from calendar bookings."""

__version__ = "0.1.0"
