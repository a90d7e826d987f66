"""
Identity Resolution

This package resolves AT Protocol identifiers to the endpoints needed to log in.

Resolution follows these steps:
1. Parse the input to determine if it's a handle or DID
2. For handles, resolve the DID with com.atproto.identity.resolveHandle
3. Resolve the DID document (did:plc via the PLC directory, did:web via
   well-known) to find the handle and PDS
4. Discover the PDS's authorization server and read its metadata
"""
