# Routes package init
"""
Chapterly Backend — API Routes Package
========================================

What:  HTTP route handlers that accept requests and return responses.
Why:   Routes are the entry point for the web reader and the mobile apps.
How:   Each route module handles one resource family.

Route Inventory:
    - health.py:    GET  /health
    - books.py:     GET  /api/books, /api/books/{id}
                    POST /api/books/{id}/view
    - chapters.py:  GET  /api/chapters/book/{id}, /book/{id}/chapter/{n}
                    POST /api/chapters/unlock
    - payments.py:  GET  /api/payments/packages, /balance
                    POST checkout / payment-sheet creation and confirmation,
                         /verify-purchase (Google Play), /stripe/webhook
    - auth.py:      POST /api/auth/magiclink, /verify, /guest,
                         /delete-otp, /delete-confirm
                    GET  /api/auth/me
                    DELETE /api/auth/delete

Design Principle:
    Routes stay THIN: pull values out of the request, call a service,
    shape the response. Status codes for failures come from the
    exception handlers in main.py.
"""
