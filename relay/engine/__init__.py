"""Execution engine and wire transports."""

from relay.engine.base import Engine, ModelRequest, ModelResponse, StreamChunk, Transport, run_abortable

__all__ = ["Engine", "ModelRequest", "ModelResponse", "StreamChunk", "Transport", "run_abortable"]
