"""Subscription billing scheduler and dunning engine."""

__version__ = "0.4.0"
