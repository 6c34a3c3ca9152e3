"""LTI 1.3 / OIDC launch handshake."""
