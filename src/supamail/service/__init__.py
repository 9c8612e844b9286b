"""Inbound processing service."""

from .pipeline import InboundPipeline, message_from_form

__all__ = ["InboundPipeline", "message_from_form"]
