"""KotlinRunner - Run Kotlin scripts with live output, cancellation and error navigation."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("kotlinrunner")
except PackageNotFoundError:
    # Package not installed, fallback to pyproject.toml version
    __version__ = "0.1.0"
