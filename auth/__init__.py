"""auth/ -- Token lifecycle package for TokenGate.

Codec, session policy, credential store, TokenService and the account flows
built on it.

Layer rule: auth/ imports from core/ and registry/base only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
