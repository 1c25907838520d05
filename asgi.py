"""
asgi.py -- Application assembly for SessionGate.

This is the ONLY file that imports from both api/ and gateway/. The two apps
are deployed as separate processes and never call each other in-process;
the gateway reaches the auth service over HTTP like any other upstream.

Run with:  uvicorn asgi:app --port 8081       (auth service)
           uvicorn asgi:gateway --port 8080   (gateway)
"""

from api.main import create_app
from gateway.main import create_gateway_app

app = create_app()
gateway = create_gateway_app()
