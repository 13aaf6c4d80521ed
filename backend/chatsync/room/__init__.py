"""Room state and its synchronization.

Provides:
    - RoomStateReconciler: Canonical merged state of one room.
    - TypingLifecycleManager: Debounced outgoing and TTL-bounded incoming typing state.
    - EngagementAnalyzer: Mutual activity streak.
    - MentionResolver: ``@token`` completion against the roster.
    - OptimisticSendPipeline: Draft to committed message with rollback.
    - RoomSession: Single owner wiring all of the above to the adapters.
"""
