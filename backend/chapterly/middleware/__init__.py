# Middleware package init
"""
Chapterly Backend — Middleware Package
========================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Rate Limit] → [Request ID] → [Access Log] → [GZip] → [CORS] → Route

    1. Rate limit first: rejected requests cost nothing downstream
    2. Request ID before logging so every access line carries it
    3. CORS innermost, handled by FastAPI's CORSMiddleware
"""
