from .client import DeltaPage, DropboxClient, RemoteEntry, content_hash
from .oauth import OAuthCredential, OAuthManager, OAuthState

__all__ = [
    "DeltaPage",
    "DropboxClient",
    "OAuthCredential",
    "OAuthManager",
    "OAuthState",
    "RemoteEntry",
    "content_hash",
]
