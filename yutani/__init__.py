"""Yutani - Wayland-style protocol code generator."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("yutani")
except PackageNotFoundError:
    __version__ = "(local)"
