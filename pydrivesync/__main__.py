"""Allow running as ``python -m pydrivesync``."""

from .cli import main

if __name__ == "__main__":
    main()
