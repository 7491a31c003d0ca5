from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("query-presence")
except PackageNotFoundError:
    # Package not installed, fallback for development
    __version__ = "dev"
