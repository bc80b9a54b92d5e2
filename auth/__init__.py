"""auth/ -- Credential and access-control kernel for AccessGate.

Layer rule: auth/ imports only core/, stdlib, and third-party libraries.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around.
"""
