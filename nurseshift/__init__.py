"""Shift scheduling service for hospital nursing departments."""

__version__ = '0.1.0'
