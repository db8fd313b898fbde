"""
Rate limiting package for the proxy.

Holds the miss-gated fixed-window limiter: per client and endpoint type,
only requests that miss the cache count against the budget.
"""
