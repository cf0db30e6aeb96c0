# Middleware package init
"""
Points Engine — Middleware Package
===================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Request ID] → [Access Log] → [GZip] → [CORS] → Route Handler

    1. Request ID first, so the access log and every handler log share it
    2. Access log measures duration and records status, user and request id

No rate limiting here: payment processors retry webhooks in bursts, and a
throttled retry is a delayed credit.
"""
