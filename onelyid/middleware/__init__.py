"""
Onelyid — Middleware Package
==============================

    Request → [OnelyidMiddleware gate] → onelyid route | host application

Only HTTP requests are gated. WebSocket connections pass straight through to
the host application; lifespan messages pass through after starting bootstrap.
"""
