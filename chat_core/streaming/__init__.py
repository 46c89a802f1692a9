"""Streaming session engine (chunk decoding, frame parsing, session lifecycle)."""

from .decoder import ChunkDecoder
from .frames import Frame, interpret
from .session import SessionEvent, SessionState, StreamSession

__all__ = ["ChunkDecoder", "Frame", "interpret", "SessionEvent", "SessionState", "StreamSession"]
