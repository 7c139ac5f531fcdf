"""
Casework — Infrastructure Services

Structured logging, YAML configuration, the SQLite backend, the
hash-chained audit trail and webhook notification delivery.
"""
