"""meshcore: coordination substrate for loosely synchronized agent swarms."""

try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("meshcore")
except Exception:
    __version__ = "2026.10.18.1"  # fallback

__all__ = ["__version__"]
