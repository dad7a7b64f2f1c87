"""
Persistence for the usage ledger.
"""
