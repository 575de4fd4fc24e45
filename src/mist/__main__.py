"""Allow ``python -m mist``."""

from .cli import main

if __name__ == "__main__":
    main()
