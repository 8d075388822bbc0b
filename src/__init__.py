"""
Liquid voting backend.

Organizations vote on proposals directly or by delegating, globally or per
proposal, to another participant. The ``voting`` package holds the engine,
``routers`` exposes it over HTTP.
"""

__all__ = [
]
