"""
Core modules for API Cache Guard.

This package contains cache key derivation, the response cache, quota
tracking and the LLM exchange log.
"""
