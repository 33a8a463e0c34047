"""
Core modules for AI Chat Ledger.

This package contains usage accounting, quota enforcement and
conversation context assembly.
"""
