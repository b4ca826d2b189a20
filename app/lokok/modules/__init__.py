"""
Feature modules live under this package.

Each module owns its routes, service logic and storage, and reuses the
platform pieces (auth, roles, audit, DB session) from `app.lokok`.
"""
