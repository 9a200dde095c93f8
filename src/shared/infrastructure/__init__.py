"""
Infrastructure Layer
=====================

Low-level technical concerns shared by every module:
- Structured JSON logging
- Latency logging helpers
"""
