"""Durable log buffer between emitters and the batch delivery sink."""

from piiwatch.buffer.log_buffer import FullPolicy, LogBuffer

__all__ = ["FullPolicy", "LogBuffer"]
