# Routes package init
"""
Points Engine — API Routes Package
===================================

What:  HTTP route handlers that accept requests and return responses.
How:   Each route module handles one resource.

Route Inventory:
    - books.py:     POST /api/books, GET /api/books/{id},
                    GET /api/books/recommendations, GET /api/books/trending
    - exchange.py:  POST /api/exchange/requests[/{id}/accept|decline|cancel|complete],
                    GET  /api/exchange/requests
    - ledger.py:    GET  /api/points/balance|summary|history|consistency,
                    PUT  /api/points/account
    - webhooks.py:  POST /api/webhooks/payments, GET /api/payments/packages
    - health.py:    GET  /health

Design Principle:
    Routes are THIN: extract input, call a service from the container,
    shape the response. Business rules and every point movement live in
    services; errors are mapped to HTTP by the handlers in main.py.
"""
