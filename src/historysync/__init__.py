"""
History-sync package: receives the one-time history sync delivered by the
messaging service, folds tracked conversations into PostgreSQL, and asks
Claude for a recap when a metadata-only sync arrives.

All protocol access goes through ReadOnlyProtocolClient; this service
never sends anything on the paired account.
"""
