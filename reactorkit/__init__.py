"""Reactor-style networking toolkit: event loops, TCP and UDP channels, coroutines and Redis examples."""

__version__ = "0.1.0"