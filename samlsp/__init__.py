"""samlsp: SAML 2.0 Service Provider toolkit."""

__version__ = "0.1.0"
