"""
webtrace.observability

Observability package.

Responsibilities:
- Structured logging configuration.
- Starlette middleware that puts the span coordinator in front of every request.
"""

# Package marker.
