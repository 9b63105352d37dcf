"""auth/ -- Authentication core for AuthGate.

Tokens, sessions, OTPs, the account controllers and their persistence.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or client/.
api/ imports from auth/, not the other way around.
"""
