"""Supamail: inbound email gateway with masked addresses and allow/block rules."""

__version__ = "0.1.0"
