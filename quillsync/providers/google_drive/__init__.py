from .adapter import DriveAdapter, RemoteFile
from .auth import GoogleAuth
from .drive_client import DriveClient

__all__ = ["DriveAdapter", "DriveClient", "GoogleAuth", "RemoteFile"]
