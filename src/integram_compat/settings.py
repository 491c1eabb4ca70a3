import os
import socket
import threading

class BackendSettings:
    _instance = None
    _lock = threading.Lock()

    def __init__(self):
        self.DEBUG_MODE = os.environ.get("DEBUG_MODE","development")
        # Row store
        self.DATABASE_URL = os.environ.get("INTEGRAM_DATABASE_URL","sqlite:///./integram.db")
        self.POOL_SIZE = int(os.environ.get("INTEGRAM_POOL_SIZE","10"))
        self.BACKUP_PAGE_SIZE = int(os.environ.get("INTEGRAM_BACKUP_PAGE_SIZE","500000"))
        # Legacy digest secrets, must match the values existing databases were created with
        self.SALT = os.environ.get("INTEGRAM_SALT","DronedocSalt2025")
        self.ADMIN_HASH = os.environ.get("INTEGRAM_ADMIN_HASH") or None
        self.SERVER_NAME = os.environ.get("INTEGRAM_SERVER_NAME") or socket.gethostname()
        # RS256 public key (PEM) for /{db}/jwt; unset means the jwt is treated as a session token
        self.JWT_PUBLIC_KEY = os.environ.get("INTEGRAM_JWT_PUBLIC_KEY") or None

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(BackendSettings, cls).__new__(cls)
        return cls._instance

settings = BackendSettings()
