# Routes package init
"""
Invest Gateway - Gateway-Owned Routes
=====================================

Route Inventory:
    - system.py:  GET /api/health, GET /api/info
    - views.py:   GET /, /login, /dashboard, /profile, /kyc, /assets
                  and the static 404 document

Namespaced routes (/api/auth, /api/user, ...) are not defined here; the
dispatcher in routing.py mounts them from the route table.
"""
