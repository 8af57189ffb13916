"""Read-only access to local WeChat 4.x databases: decryption, keys, caches, contacts and favorites."""

__version__ = "0.1.0"