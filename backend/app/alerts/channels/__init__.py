"""
channels — Outbound delivery transports.

Each transport exposes:
    async send(phone, text)
    async send_multipart(phone, parts) → List[SegmentResult]

Transports never retry. Fan-out policy lives in alerts.fanout.
"""
