"""
Data Models

Key Models:
- oauth.py: Transient OAuth flow state (PKCE secret, endpoints, flow, tokens)
- session.py: The stored session record and the file-backed session store

Flow models live only for one authentication attempt. The session record is
the only model written to disk.
"""
