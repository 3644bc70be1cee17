"""Routers exposed by the SAML backend."""
