"""
alerts — SOS alert dispatch.

Sub-modules:
    channels/        — SMS transport (simulation / HTTP gateway)
    stores/          — Alert, contact and helper stores (memory / Redis)
    models           — Data structures shared across the system
    lifecycle        — Alert and helper-response state machines
    helper_matching  — Nearby-helper lookup (bounding box + Haversine)
    fanout           — Concurrent SMS fan-out to emergency contacts
    status_sync      — Alert / response subscriptions as async iterators
    responder        — Helper-side response actions
    coordinator      — One active alert, end to end
    sessions         — One coordinator per requester
"""
