"""
Authentication package for the Cosmetica session client.

This package contains the persisted token cache, the remote token validator,
the credential issuing protocols and the authentication coordinator.
"""
