"""dnsproof - prove DNS control to an ACME authority and keep the authorization."""

from dnsproof.client import DirectoryClient
from dnsproof.keyauth import build_key_authorization
from dnsproof.service import AuthzService, RunContext, run_authorization
from dnsproof.store import Store

__all__ = [
    "AuthzService",
    "DirectoryClient",
    "RunContext",
    "Store",
    "build_key_authorization",
    "run_authorization",
]
__version__ = "0.1.0"
