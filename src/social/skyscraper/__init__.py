"""
Skyscraper - Bluesky authentication

This package implements the authentication subsystem of the Skyscraper terminal
client for Bluesky and the AT Protocol. It establishes an authenticated session
with OAuth 2.0 (authorization code, PKCE, PAR and DPoP) or an app password, and
keeps the resulting credentials on local disk.

Key Components:
- app: Settings, the authentication state machine and the command line
- atproto: Protocol clients for DPoP, OAuth, the loopback redirect and app passwords
- model: Flow and session data models, and the on-disk session store
- resolve: Handle, DID and authorization server discovery

Architecture Overview:
1. Discovery:
   - Resolve the handle to a DID and read its DID document for the PDS
   - Find the PDS's authorization server and read its metadata

2. Authorization:
   - Generate a DPoP key and PKCE secret for the attempt
   - Push the authorization request and open the browser
   - Wait for the redirect on a loopback listener

3. Exchange and storage:
   - Exchange the code for DPoP-bound tokens
   - Store the session with owner-only permissions
   - Restore the stored session at startup by refreshing it
"""
