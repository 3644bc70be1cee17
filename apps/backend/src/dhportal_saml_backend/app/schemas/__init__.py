"""Response schemas for the SAML backend."""
