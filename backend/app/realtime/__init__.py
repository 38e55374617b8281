"""Real-time messaging core.

Room-scoped chat with delivery/read tracking, typing indicators and online
presence, served over a single WebSocket endpoint.

Components:
    - KeyedDispatcher: per-room / per-user serialization of state changes.
    - ConnectionRegistry: live connections per user.
    - PresenceTracker: online/offline propagation with a grace window.
    - RoomMembershipIndex: cached room authorization.
    - TypingIndicator: debounced typing events with idle expiry.
    - MessageDeliveryEngine: sequencing, persistence, fan-out and receipts.
    - RoomSessionCoordinator: binds connection intents to the above.
"""
