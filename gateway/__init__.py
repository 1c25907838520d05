"""gateway/ -- Edge service: bearer-token filter and reverse proxy for SessionGate.

Layer rule: gateway/ may import from auth/ and core/. It does NOT import
from api/; the auth service is just another upstream from here.
"""
