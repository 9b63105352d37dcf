"""client/ -- Async Python SDK for the AuthGate API.

api.py      -- AuthApiClient (httpx) and the in-memory AccessTokenStore
context.py  -- AuthContext: observable auth state and result-returning actions

Layer rule: client/ talks to the server only over HTTP. It does NOT import
from api/, auth/ or core/.
"""

from client.api import AccessTokenStore, ApiError, AuthApiClient
from client.context import AuthContext, AuthState, AuthUser, Err, Ok

__all__ = [
    "AccessTokenStore",
    "ApiError",
    "AuthApiClient",
    "AuthContext",
    "AuthState",
    "AuthUser",
    "Err",
    "Ok",
]
