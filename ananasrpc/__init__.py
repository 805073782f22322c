"""RPC framework with pluggable coders, name-service discovery, a health page and TLS sessions."""

__version__ = "0.1.0"