"""Authentication module.

Resolves the bearer tokens issued by the platform's account service into
verified identities, for both the WebSocket handshake and the HTTP routes.

Services:
    - IdentityResolver: verifies HS256 JWTs and issues development tokens.
    - require_identity: FastAPI dependency for ``Authorization: Bearer``.
"""
