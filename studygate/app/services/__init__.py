"""Services package.

This package provides:
- Sliding window rate limiting (rate_limit)
- Streaming relay between the inference provider and the client
- The request gate combining both
- Persistence sinks for relayed output and checklist parsing
"""
