"""
pincer — local-first agent runtime.

Drives multi-turn, tool-augmented conversations against a local model
backend, serialises runs per session and keeps history inside a bounded
context window.
"""

__version__ = "0.1.0"
