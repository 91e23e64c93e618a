"""
Shared building blocks for the sync engine.

Modules:
- envelope: `{d, n, t}` wire envelope codecs (AES-GCM default, AES-CBC legacy)
- remote: remote user API client with envelope unwrapping
- connectivity: online/offline signal with transition listeners
- credentials: password hash verification
"""

__all__ = [
    "connectivity",
    "credentials",
    "envelope",
    "remote",
]
