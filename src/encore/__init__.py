"""Encore: a Discord music bot with crash-safe playback."""

__version__ = "0.1.0"
