"""
Authentication for Gatehouse.

Design goals:
- One coordinator decides every signup/login outcome; HTTP concerns stay in the API layer.
- Local username/password plus a generic OIDC provider for third-party login.
- Cookie-based session (HttpOnly, signed) carrying only the user id.
"""
