"""
tokenusage - Token Usage Telemetry Pipeline

Extracts token usage from LLM provider responses (JSON and SSE streams),
records it per access key and per user through an at-least-once message
channel, and rolls it up into hourly, daily and monthly statistics.
"""

__version__ = "1.0.0"
__author__ = "tokenusage"
