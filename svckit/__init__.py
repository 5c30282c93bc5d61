"""Building blocks for services: event queues, batching, rate limiting, file watching, logging, metadata decoding and JWKS caching."""

__version__ = "0.1.0"