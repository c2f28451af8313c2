"""auth/ -- Third-party login (OAuth2 / OIDC) package for OAuthGate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/config.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
