"""Rollout history views: read-only projections over the rollout ledger.

renderer
    ``HistoryRenderer`` turns ``RolloutRecord``s and ledger entries into
    Rich tables and panels for the ``history`` and ``show`` commands.
"""
