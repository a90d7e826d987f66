"""
AT Protocol Integration

This package provides the protocol clients used to authenticate against an AT
Protocol authorization server and PDS.

Key Components:
- jwt.py: DPoP key material and proof signing
- dpop.py: DPoP-protected form requests with server nonce retry
- pds.py: Protected resource and authorization server metadata
- oauth.py: Pushed authorization requests and the token exchange
- callback.py: Loopback listener for the authorization redirect
- app_password.py: App password session creation and refresh
- errors.py: The authentication error taxonomy

The OAuth flow follows these steps:
1. Generate a DPoP key and PKCE secret for the attempt
2. Push the authorization request (or build it directly) and open the browser
3. Receive the authorization code on the loopback listener
4. Exchange the code for DPoP-bound tokens
"""
