"""
webtrace.api

App composition for traced FastAPI services.

Responsibilities:
- `instrument_app` for embedding applications.
- A runnable demo service (`python -m webtrace.api`).
"""

# Package marker.
