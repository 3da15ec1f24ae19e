"""Power Guard: household power limit guard with prioritized load mitigation."""

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("power-guard")
except Exception:
    __version__ = "dev"
