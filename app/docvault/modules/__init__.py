"""
Feature modules live under this package.

Each module owns its routes and models while reusing platform primitives
(auth, audit, storage, DB session).
"""
