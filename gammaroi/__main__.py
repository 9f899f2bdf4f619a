"""Allow running the package with ``python -m gammaroi``."""

from .main import entry_point

if __name__ == "__main__":
    entry_point()
