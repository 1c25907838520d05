"""auth/ -- Token codec, access/refresh tokens, and session lifecycle for SessionGate.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/, gateway/, or core/; configuration values are
passed into constructors by whoever assembles the app.
api/ and gateway/ import from auth/, not the other way around.
"""
