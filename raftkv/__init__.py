"""Replicated key-value store on Raft consensus, with a small TCP RPC layer."""

__version__ = "0.1.0"