"""Authentication module (JWT bearer tokens).

Services:
    - UserDirectory: DuckDB-backed user accounts.
    - IdentityVerifier: Validates a bearer token and yields an Identity.
"""
